"""HTTP routes for authentication."""

import logging

from fastapi import APIRouter, Depends, Request, Response

from api.base import success_response
from auth import rate_limiter as limits
from auth.access_gate import REFRESH_TOKEN_COOKIE, ACCESS_TOKEN_COOKIE, AccessGate
from auth.config import AuthConfig
from auth.exceptions import AppError
from auth.pipeline import (
    AuthenticateStage,
    RateLimitStage,
    RequestContext,
    RequestPipeline,
    pipeline_dependency,
)
from auth.rate_limiter import RateLimiter, RateLimitRule
from auth.service import AuthService
from auth.types import (
    AuthenticatedUser,
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    ProfileUpdate,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    User,
    VerifyEmailRequest,
)

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _user_payload(user: User) -> dict:
    return user.model_dump(mode="json")


def _auth_payload(result: AuthenticatedUser) -> dict:
    return {
        "user": _user_payload(result.user),
        "session": {
            "id": str(result.session.id),
            "is_active": result.session.is_active,
            "access_expires_at": result.session.access_expires_at.isoformat(),
            "refresh_expires_at": result.session.refresh_expires_at.isoformat(),
        },
        "tokens": {
            "access_token": result.tokens.access_token,
            "refresh_token": result.tokens.refresh_token,
            "expires_in": result.tokens.access_ttl,
            "refresh_expires_in": result.tokens.refresh_ttl,
        },
    }


def create_auth_router(
    auth_service: AuthService,
    gate: AccessGate,
    limiter: RateLimiter,
    config: AuthConfig,
) -> APIRouter:
    """Create auth router with injected service."""
    router = APIRouter(tags=["auth"])

    def limited(rule: RateLimitRule):
        return Depends(pipeline_dependency(RequestPipeline([RateLimitStage(limiter, rule)])))

    authenticated = Depends(pipeline_dependency(RequestPipeline([AuthenticateStage(gate)])))

    secure_cookies = config.cookie_secure or config.is_production

    def set_token_cookies(response: Response, result: AuthenticatedUser) -> None:
        response.set_cookie(
            key=ACCESS_TOKEN_COOKIE,
            value=result.tokens.access_token,
            httponly=True,
            secure=secure_cookies,
            samesite=config.cookie_samesite,
            max_age=result.tokens.access_ttl,
        )
        response.set_cookie(
            key=REFRESH_TOKEN_COOKIE,
            value=result.tokens.refresh_token,
            httponly=True,
            secure=secure_cookies,
            samesite=config.cookie_samesite,
            max_age=result.tokens.refresh_ttl,
        )

    def clear_token_cookies(response: Response) -> None:
        for key in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
            response.delete_cookie(
                key=key,
                httponly=True,
                secure=secure_cookies,
                samesite=config.cookie_samesite,
            )

    @router.post("/register", status_code=201)
    def register(request: Request, body: RegisterRequest, ctx: RequestContext = limited(limits.REGISTER)):
        """Create an account and email a verification code."""
        user = auth_service.register(body, ctx.client)
        return success_response(
            {
                "user": _user_payload(user),
                "message": "Registration successful. Please check your email for the verification code.",
            },
            request_id=_request_id(request),
        )

    @router.post("/verify-email")
    def verify_email(
        request: Request,
        response: Response,
        body: VerifyEmailRequest,
        ctx: RequestContext = limited(limits.VERIFY),
    ):
        """Verify email with code. Sets token cookies on success."""
        result = auth_service.verify_email(body.code, body.email, ctx.client)
        set_token_cookies(response, result)
        return success_response(_auth_payload(result), request_id=_request_id(request))

    @router.post("/login")
    def login(
        request: Request,
        response: Response,
        body: LoginRequest,
        ctx: RequestContext = limited(limits.LOGIN),
    ):
        result = auth_service.login(body, ctx.client)
        set_token_cookies(response, result)
        return success_response(_auth_payload(result), request_id=_request_id(request))

    @router.post("/refresh-token")
    def refresh_token(
        request: Request,
        response: Response,
        body: RefreshTokenRequest | None = None,
        ctx: RequestContext = limited(limits.REFRESH),
    ):
        """Rotate the token pair. Refresh token from body or refreshToken cookie."""
        token = (body.refresh_token if body else None) or ctx.cookies.get(REFRESH_TOKEN_COOKIE)
        if not token:
            raise AppError.unauthorized("Refresh token is required")

        result = auth_service.refresh(token, ctx.client)
        set_token_cookies(response, result)
        return success_response({"tokens": _auth_payload(result)["tokens"]}, request_id=_request_id(request))

    @router.post("/resend-verification")
    def resend_verification(
        request: Request,
        body: EmailRequest,
        ctx: RequestContext = limited(limits.RESEND),
    ):
        auth_service.resend_verification(body.email, ctx.client)
        return success_response(
            {"message": "If this email is registered, a verification code will be sent"},
            request_id=_request_id(request),
        )

    @router.post("/forgot-password")
    def forgot_password(
        request: Request,
        body: EmailRequest,
        ctx: RequestContext = limited(limits.FORGOT),
    ):
        auth_service.forgot_password(body.email, ctx.client)
        return success_response(
            {"message": "If this email is registered, a password reset code will be sent"},
            request_id=_request_id(request),
        )

    @router.post("/reset-password")
    def reset_password(
        request: Request,
        body: ResetPasswordRequest,
        ctx: RequestContext = limited(limits.RESET),
    ):
        auth_service.reset_password(body, ctx.client)
        return success_response(
            {"message": "Password reset successful. Please log in with your new password."},
            request_id=_request_id(request),
        )

    @router.post("/logout")
    def logout(request: Request, response: Response, ctx: RequestContext = authenticated):
        """Logout - invalidate session and clear cookies."""
        auth_service.logout(ctx.token, ctx.client)
        clear_token_cookies(response)
        return success_response({"message": "Logged out successfully"}, request_id=_request_id(request))

    @router.get("/me")
    def get_current_user(request: Request, ctx: RequestContext = authenticated):
        user = auth_service.get_current_user(ctx.identity.user_id)
        return success_response({"user": _user_payload(user)}, request_id=_request_id(request))

    @router.patch("/me")
    def update_profile(request: Request, body: ProfileUpdate, ctx: RequestContext = authenticated):
        """Update own profile. Email, password, role and status are not editable here."""
        user = auth_service.update_profile(ctx.identity.user_id, body)
        return success_response({"user": _user_payload(user)}, request_id=_request_id(request))

    change_password_pipeline = RequestPipeline([
        AuthenticateStage(gate),
        RateLimitStage(limiter, limits.PASSWORD_CHANGE),
    ])

    @router.post("/change-password")
    def change_password(
        request: Request,
        body: ChangePasswordRequest,
        ctx: RequestContext = Depends(pipeline_dependency(change_password_pipeline)),
    ):
        auth_service.change_password(ctx.identity.user_id, body, ctx.client)
        return success_response({"message": "Password changed successfully"}, request_id=_request_id(request))

    return router
