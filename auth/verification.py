"""Verification code lifecycle.

A code is a 6-digit secret bound to (user, purpose). It is live while
unverified, unexpired and under its attempt ceiling. Issuing a new code
kills every earlier unverified code for the same pair; consuming one is a
conditional write, so each code is used at most once.
"""

import hmac
import logging
import secrets
from datetime import timedelta
from typing import Protocol
from uuid import UUID, uuid4

from auth.config import AuthConfig
from auth.database import AuthStore
from auth.exceptions import InvalidOrExpiredCodeError, NotificationFailedError, RateLimitedError
from auth.types import CodePurpose, VerificationCode
from utils.timezone import now_utc, seconds_until

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Outbound channel for codes and account notices."""

    def send_verification_code(self, email: str, code: str, purpose: str, expires_in_minutes: int) -> None: ...
    def send_welcome(self, email: str, first_name: str) -> None: ...


def generate_code() -> str:
    """Uniform 6-digit code in [100000, 999999] from the OS CSPRNG."""
    return str(100000 + secrets.randbelow(900000))


class VerificationCodeManager:
    """Issues, checks, consumes, resends and purges verification codes."""

    def __init__(self, store: AuthStore, notifier: Notifier, config: AuthConfig):
        self._store = store
        self._notifier = notifier
        self._config = config

    @property
    def _cooldown(self) -> timedelta:
        return timedelta(seconds=self._config.code_resend_cooldown_seconds)

    @property
    def _lifetime(self) -> timedelta:
        return timedelta(minutes=self._config.code_expiry_minutes)

    def issue(self, user_id: UUID, email: str, purpose: CodePurpose) -> VerificationCode:
        """Create a fresh code and kill the previous unverified ones.

        Raises:
            RateLimitedError: If a live code for the pair was sent within the cooldown.
        """
        with self._store.transaction():
            self._store.lock_code_issue(user_id, purpose)
            now = now_utc()
            latest = self._store.get_latest_unverified_code(user_id, purpose)
            if latest is not None and not latest.is_expired(now):
                ready_at = latest.sent_at + self._cooldown
                if now < ready_at:
                    raise RateLimitedError(
                        retry_after_seconds=seconds_until(ready_at, now),
                        message="A verification code was recently sent. Please wait before requesting another.",
                    )

            self._store.invalidate_codes(user_id, purpose)
            code = self._store.insert_code(
                VerificationCode(
                    id=uuid4(),
                    user_id=user_id,
                    email=email,
                    code=generate_code(),
                    purpose=purpose,
                    created_at=now,
                    sent_at=now,
                    expires_at=now + self._lifetime,
                    attempts=0,
                    max_attempts=self._config.code_max_attempts,
                    verified=False,
                )
            )

        logger.info(f"Verification code issued for user {user_id} ({purpose.value})")
        return code

    def check(self, code: str, purpose: CodePurpose, email: str | None = None) -> VerificationCode:
        """Count one attempt against a code and return it if it matched.

        With email, the live code for (email, purpose) is looked up and
        compared in constant time, so wrong guesses burn that code's
        attempts. Without it, the code value itself is the lookup key.

        Raises:
            InvalidOrExpiredCodeError: Missing, expired, exhausted or wrong.
        """
        now = now_utc()

        if email is not None:
            candidate = self._store.find_live_code_for_email(email, purpose, now)
        else:
            candidate = self._store.find_unverified_code(code, purpose, now)

        if candidate is None:
            logger.info(f"Code check failed: no live {purpose.value} code")
            raise InvalidOrExpiredCodeError()

        # Single bounded increment; None means the ceiling or expiry was hit
        counted = self._store.increment_code_attempts(candidate.id, now)
        if counted is None:
            logger.info(f"Code check failed: code {candidate.id} expired or exhausted")
            raise InvalidOrExpiredCodeError()

        if not hmac.compare_digest(counted.code.encode(), code.encode()):
            logger.info(f"Code check failed: wrong code for {candidate.id} (attempt {counted.attempts})")
            raise InvalidOrExpiredCodeError()

        return counted

    def mark_verified(self, code: VerificationCode) -> None:
        """Consume the code.

        Raises:
            InvalidOrExpiredCodeError: If another request consumed it first.
        """
        if not self._store.mark_code_verified(code.id, now_utc()):
            raise InvalidOrExpiredCodeError()

    def resend(self, user_id: UUID, email: str, purpose: CodePurpose) -> VerificationCode:
        """Regenerate the live code in place, or issue a new one, and deliver it.

        Raises:
            RateLimitedError: If the live code was sent within the cooldown.
            NotificationFailedError: If delivery fails.
        """
        with self._store.transaction():
            self._store.lock_code_issue(user_id, purpose)
            now = now_utc()
            latest = self._store.get_latest_unverified_code(user_id, purpose)

            if latest is not None and not latest.is_expired(now):
                ready_at = latest.sent_at + self._cooldown
                if now < ready_at:
                    wait = seconds_until(ready_at, now)
                    raise RateLimitedError(
                        retry_after_seconds=wait,
                        message=f"Please wait {wait} seconds before requesting another code",
                    )
                code = self._store.regenerate_code(
                    latest.id, generate_code(), sent_at=now, expires_at=now + self._lifetime
                )
                if code is None:
                    # Consumed between the read and the write
                    code = self.issue(user_id, email, purpose)
            else:
                code = self.issue(user_id, email, purpose)

        self.deliver(code)
        logger.info(f"Verification code resent for user {user_id} ({purpose.value})")
        return code

    def deliver(self, code: VerificationCode) -> None:
        """Send the code through the notifier.

        Raises:
            NotificationFailedError: If the notifier fails. Stored state is kept.
        """
        if code.purpose == CodePurpose.PHONE_VERIFICATION:
            logger.warning("Phone verification delivery is not available")
            return

        try:
            self._notifier.send_verification_code(
                email=code.email,
                code=code.code,
                purpose=code.purpose.value,
                expires_in_minutes=self._config.code_expiry_minutes,
            )
        except Exception as e:
            logger.error(f"Failed to deliver {code.purpose.value} code to user {code.user_id}: {e}")
            raise NotificationFailedError() from e

    def purge_expired(self) -> int:
        """Delete never-verified codes past expiry. Returns count."""
        deleted = self._store.delete_expired_codes(now_utc())
        if deleted:
            logger.info(f"Purged {deleted} expired verification codes")
        return deleted
