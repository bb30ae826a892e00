"""Per-action rate limiting.

Fixed window counters in Valkey: the first hit in a window creates the key
and sets its expiry, later hits only increment. Counters are keyed by the
action name plus the caller (IP address and user id, or "anonymous").
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from clients.valkey_client import ValkeyClient
from auth.config import AuthConfig
from auth.exceptions import RateLimitedError
from auth.types import UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """A named limit: max_attempts per window_minutes."""

    name: str
    max_attempts: int
    window_minutes: int
    message: str | None = None

    @property
    def window_seconds(self) -> int:
        return self.window_minutes * 60

    @property
    def denial_message(self) -> str:
        return self.message or (
            f"Too many {self.name} requests. "
            f"Please wait {self.window_minutes} minutes before trying again."
        )


# Per-action rules
REGISTER = RateLimitRule("register", 5, 15)
VERIFY = RateLimitRule("verify", 5, 15)
LOGIN = RateLimitRule("login", 5, 15)
REFRESH = RateLimitRule("refresh", 10, 15)
RESEND = RateLimitRule("resend", 3, 15)
FORGOT = RateLimitRule("forgot", 3, 15)
RESET = RateLimitRule("reset", 3, 15)
PASSWORD_CHANGE = RateLimitRule("password-change", 3, 60)

# Generic classes
AUTH = RateLimitRule(
    "auth", 5, 15, "Too many authentication attempts. Please try again in 15 minutes."
)
API = RateLimitRule(
    "api", 100, 15, "API rate limit exceeded. Please slow down your requests."
)
STRICT = RateLimitRule(
    "strict", 3, 60, "Maximum attempts reached. Please try again in 1 hour."
)


class RateLimiter:
    """Admission control for named actions using Valkey counters."""

    KEY_PREFIX = "ratelimit:"

    def __init__(self, valkey: ValkeyClient, config: AuthConfig):
        self._valkey = valkey
        self._config = config

    def _key(self, rule: RateLimitRule, ip_address: str | None, user_id: UUID | None) -> str:
        caller = f"{ip_address or 'unknown'}-{user_id or 'anonymous'}"
        return f"{self.KEY_PREFIX}{rule.name}:{caller}"

    def is_exempt(self, role: UserRole | None = None) -> bool:
        if self._config.is_test:
            return True
        return role is not None and role in self._config.rate_limit_exempt_roles

    def check(
        self,
        rule: RateLimitRule,
        ip_address: str | None,
        user_id: UUID | None = None,
        role: UserRole | None = None,
    ) -> None:
        """Count one attempt.

        Raises:
            RateLimitedError: If the caller is over the rule's limit.
        """
        if self.is_exempt(role):
            return

        key = self._key(rule, ip_address, user_id)
        count = self._valkey.incr(key)

        if count == 1:
            # First attempt, start the window
            self._valkey.expire(key, rule.window_seconds)

        if count > rule.max_attempts:
            ttl = self._valkey.ttl(key)
            if ttl < 0:
                # Window lost its expiry; restart it rather than block forever
                self._valkey.expire(key, rule.window_seconds)
                ttl = rule.window_seconds
            logger.warning(f"Rate limit '{rule.name}' exceeded by {ip_address} ({count} attempts)")
            raise RateLimitedError(retry_after_seconds=max(ttl, 1), message=rule.denial_message)

    def reset(self, rule: RateLimitRule, ip_address: str | None, user_id: UUID | None = None) -> None:
        self._valkey.delete(self._key(rule, ip_address, user_id))

    def get_remaining_attempts(
        self,
        rule: RateLimitRule,
        ip_address: str | None,
        user_id: UUID | None = None,
    ) -> int:
        """Get remaining attempts in the current window."""
        current = self._valkey.get(self._key(rule, ip_address, user_id))

        if current is None:
            return rule.max_attempts

        return max(rule.max_attempts - int(current), 0)
