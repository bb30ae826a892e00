"""Ordered request pipeline: rate limit -> authenticate -> authorize.

Each stage looks at the RequestContext and returns None to let the request
continue, or an AppError to stop it. RequestPipeline runs stages in order
and stops at the first error. pipeline_dependency() exposes a pipeline to
FastAPI routes as a dependency that yields the finished context.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence
from uuid import UUID

from fastapi import Request

from auth.access_gate import (
    AccessGate,
    extract_token,
    require_minimum_role,
    require_owner_or_admin,
    require_permissions,
    require_roles,
)
from auth.exceptions import AppError
from auth.rate_limiter import RateLimiter, RateLimitRule
from auth.types import ClientInfo, Identity, Permission, UserRole

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """What the stages know about the inbound request."""

    ip_address: str | None = None
    user_agent: str | None = None
    authorization: str | None = None
    cookies: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    path_params: Mapping[str, str] = field(default_factory=dict)
    token: str | None = None
    identity: Identity | None = None

    @property
    def client(self) -> ClientInfo:
        return ClientInfo(ip_address=self.ip_address, user_agent=self.user_agent)


Stage = Callable[[RequestContext], AppError | None]


def _as_error(check: Callable[[], None]) -> AppError | None:
    """Run a raising check and hand back its AppError instead."""
    try:
        check()
    except AppError as e:
        return e
    return None


class RateLimitStage:
    """Count the request against a rule, keyed by IP and (if known) user."""

    def __init__(self, limiter: RateLimiter, rule: RateLimitRule):
        self._limiter = limiter
        self.rule = rule

    def __call__(self, ctx: RequestContext) -> AppError | None:
        identity = ctx.identity
        return _as_error(lambda: self._limiter.check(
            self.rule,
            ctx.ip_address,
            user_id=identity.user_id if identity else None,
            role=identity.role if identity else None,
        ))


class AuthenticateStage:
    """Resolve the caller. Optional mode lets anonymous requests through."""

    def __init__(self, gate: AccessGate, optional: bool = False, allow_query_token: bool = False):
        self._gate = gate
        self.optional = optional
        self.allow_query_token = allow_query_token

    def __call__(self, ctx: RequestContext) -> AppError | None:
        ctx.token = extract_token(ctx.authorization, ctx.cookies, ctx.query, self.allow_query_token)

        if self.optional:
            ctx.identity = self._gate.authenticate_optional(ctx.token)
            return None

        try:
            ctx.identity = self._gate.authenticate(ctx.token)
        except AppError as e:
            return e
        return None


class RequireRolesStage:
    def __init__(self, roles: Iterable[UserRole]):
        self.roles = frozenset(roles)

    def __call__(self, ctx: RequestContext) -> AppError | None:
        return _as_error(lambda: require_roles(ctx.identity, self.roles))


class MinimumRoleStage:
    def __init__(self, minimum: UserRole):
        self.minimum = minimum

    def __call__(self, ctx: RequestContext) -> AppError | None:
        return _as_error(lambda: require_minimum_role(ctx.identity, self.minimum))


class PermissionStage:
    """Any one of the listed permissions is enough."""

    def __init__(self, permissions: Iterable[Permission]):
        self.permissions = frozenset(permissions)

    def __call__(self, ctx: RequestContext) -> AppError | None:
        return _as_error(lambda: require_permissions(ctx.identity, self.permissions))


class OwnershipStage:
    """Caller must own the resource named by a path parameter, or be an admin."""

    def __init__(self, owner_param: str = "user_id"):
        self.owner_param = owner_param

    def __call__(self, ctx: RequestContext) -> AppError | None:
        raw = ctx.path_params.get(self.owner_param)
        owner_id = None
        if raw is not None:
            try:
                owner_id = UUID(str(raw))
            except ValueError:
                return AppError.invalid_id()
        return _as_error(lambda: require_owner_or_admin(ctx.identity, owner_id))


class RequestPipeline:
    """Run stages in order, stopping at the first error."""

    def __init__(self, stages: Sequence[Stage]):
        self.stages = list(stages)

    def run(self, ctx: RequestContext) -> AppError | None:
        for stage in self.stages:
            error = stage(ctx)
            if error is not None:
                logger.debug(f"{type(stage).__name__} stopped request: {error.code}")
                return error
        return None


def client_ip(request: Request) -> str | None:
    """Extract valid IP address from request, or None if invalid."""
    if not request.client:
        return None
    host = request.client.host
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        return None


def context_from_request(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        authorization=request.headers.get("Authorization"),
        cookies=dict(request.cookies),
        query=dict(request.query_params),
        path_params=dict(request.path_params),
    )


def pipeline_dependency(pipeline: RequestPipeline) -> Callable[[Request], RequestContext]:
    """FastAPI dependency that runs the pipeline and raises its error."""

    def run_pipeline(request: Request) -> RequestContext:
        ctx = context_from_request(request)
        error = pipeline.run(ctx)
        if error is not None:
            raise error
        return ctx

    return run_pipeline
