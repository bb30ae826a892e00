"""Authentication service - orchestrates account and session workflows.

Account states: PENDING_VERIFICATION -> ACTIVE <-> SUSPENDED. Only ACTIVE
accounts with a verified email ever receive a session.

Workflows that bundle several writes (register, verify email, reset
password) run them inside one store transaction. Outbound email happens
after commit: a delivery failure surfaces as NotificationFailedError and
leaves the committed state in place.
"""

import logging
from uuid import UUID

from auth.config import AuthConfig
from auth.credentials import CredentialStore
from auth.database import AuthStore
from auth.exceptions import AppError, DuplicateEmailError, InvalidOrExpiredCodeError, NotificationFailedError
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.session import SessionManager
from auth.tokens import TokenIssuer
from auth.types import (
    AuthenticatedUser,
    ChangePasswordRequest,
    ClientInfo,
    CodePurpose,
    LoginRequest,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    User,
    UserStatus,
    normalize_email,
)
from auth.verification import Notifier, VerificationCodeManager

logger = logging.getLogger(__name__)

_INVALID_CREDENTIALS = "Invalid email or password"
_INVALID_RESET = "Invalid or expired reset code"

# Statuses that block activation through email verification
_BLOCKED_STATUSES = frozenset({UserStatus.SUSPENDED, UserStatus.INACTIVE, UserStatus.DELETED})


class AuthService:
    """Orchestrates registration, verification, login and password flows.

    Owns no records itself: every write goes through CredentialStore,
    VerificationCodeManager or SessionManager.
    """

    def __init__(
        self,
        config: AuthConfig,
        store: AuthStore,
        credentials: CredentialStore,
        codes: VerificationCodeManager,
        tokens: TokenIssuer,
        sessions: SessionManager,
        notifier: Notifier,
        security_logger: SecurityLogger,
    ):
        self._config = config
        self._store = store
        self._credentials = credentials
        self._codes = codes
        self._tokens = tokens
        self._sessions = sessions
        self._notifier = notifier
        self._security_logger = security_logger

    def _log(self, event: SecurityEvent, client: ClientInfo | None = None, **kwargs) -> None:
        client = client or ClientInfo()
        self._security_logger.log(
            event,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            **kwargs,
        )

    def _deliver(self, code, client: ClientInfo | None) -> None:
        try:
            self._codes.deliver(code)
        except NotificationFailedError:
            self._log(
                SecurityEvent.NOTIFICATION_FAILED,
                client,
                email=code.email,
                user_id=code.user_id,
                details={"purpose": code.purpose.value},
            )
            raise

    # =========================================================================
    # Registration and verification
    # =========================================================================

    def register(self, request: RegisterRequest, client: ClientInfo | None = None) -> User:
        """Create a pending account and email it a verification code.

        Raises:
            DuplicateEmailError: Email already registered.
            NotificationFailedError: Account exists but the code email failed.
        """
        if self._credentials.find_by_email(request.email) is not None:
            raise DuplicateEmailError("email")

        with self._store.transaction():
            user = self._credentials.create(request.email, request.password, request)
            code = self._codes.issue(user.id, user.email, CodePurpose.EMAIL_VERIFICATION)

        self._log(SecurityEvent.USER_REGISTERED, client, email=user.email, user_id=user.id)
        logger.info(f"New user registered: {user.id}")

        self._deliver(code, client)
        return user

    def verify_email(
        self,
        code: str,
        email: str | None = None,
        client: ClientInfo | None = None,
    ) -> AuthenticatedUser:
        """Consume an email verification code, activate the account, open a session.

        Raises:
            InvalidOrExpiredCodeError: Code missing, expired, exhausted, wrong or used.
            AppError(FORBIDDEN): Account is suspended, inactive or deleted.
        """
        # Checked outside the transaction so the attempt is counted even on failure
        try:
            verification = self._codes.check(code, CodePurpose.EMAIL_VERIFICATION, email)
        except InvalidOrExpiredCodeError:
            self._log(SecurityEvent.VERIFICATION_FAILED, client, email=email)
            raise

        user = self._credentials.find_by_id(verification.user_id)
        if user is None:
            raise InvalidOrExpiredCodeError()

        if user.status in _BLOCKED_STATUSES:
            raise AppError.forbidden(f"Your account is {user.status.value}. Please contact support.")

        with self._store.transaction():
            self._codes.mark_verified(verification)
            user = self._credentials.mark_email_verified(user.id)
            tokens = self._tokens.issue(user)
            session = self._sessions.create(user.id, tokens, client)

        self._log(SecurityEvent.EMAIL_VERIFIED, client, email=user.email, user_id=user.id)
        logger.info(f"Email verified for user: {user.id}")

        try:
            self._notifier.send_welcome(user.email, user.first_name)
        except Exception as e:
            logger.warning(f"Welcome email to user {user.id} failed: {e}")

        return AuthenticatedUser(user=user, session=session, tokens=tokens)

    def resend_verification(self, email: str, client: ClientInfo | None = None) -> None:
        """Send a fresh verification code.

        Unknown emails are a silent no-op so the response never reveals
        whether an account exists.

        Raises:
            AppError(BAD_REQUEST): Email already verified.
            RateLimitedError: Previous code sent too recently.
            NotificationFailedError: Email delivery failed.
        """
        user = self._credentials.find_by_email(email)
        if user is None:
            logger.info("Verification resend requested for unknown email")
            return

        if user.email_verified:
            raise AppError.bad_request("Email is already verified")

        self._codes.resend(user.id, user.email, CodePurpose.EMAIL_VERIFICATION)
        self._log(SecurityEvent.VERIFICATION_RESENT, client, email=user.email, user_id=user.id)

    # =========================================================================
    # Login, refresh, logout
    # =========================================================================

    def login(self, request: LoginRequest, client: ClientInfo | None = None) -> AuthenticatedUser:
        """Check credentials and open a new session.

        Password is checked before account state, and unknown emails get
        the same answer as wrong passwords.

        Raises:
            AppError(UNAUTHORIZED): Unknown email or wrong password.
            AppError(FORBIDDEN): Email unverified or account not active.
        """
        user = self._credentials.find_by_email(request.email)

        if user is None:
            self._credentials.verify_dummy_password(request.password)
            self._log(
                SecurityEvent.LOGIN_FAILED,
                client,
                email=request.email,
                details={"reason": "unknown_email"},
            )
            raise AppError.unauthorized(_INVALID_CREDENTIALS)

        if not self._credentials.verify_password(user, request.password):
            self._credentials.record_login_failure(user)
            self._log(
                SecurityEvent.LOGIN_FAILED,
                client,
                email=user.email,
                user_id=user.id,
                details={"reason": "wrong_password"},
            )
            raise AppError.unauthorized(_INVALID_CREDENTIALS)

        if not user.email_verified:
            self._log(SecurityEvent.LOGIN_REFUSED, client, user_id=user.id, details={"reason": "unverified"})
            raise AppError.forbidden("Please verify your email before logging in")

        if user.status != UserStatus.ACTIVE:
            self._log(SecurityEvent.LOGIN_REFUSED, client, user_id=user.id, details={"reason": user.status.value})
            raise AppError.forbidden(f"Your account is {user.status.value}. Please contact support.")

        with self._store.transaction():
            user = self._credentials.record_login_success(user, client)
            tokens = self._tokens.issue(user)
            session = self._sessions.create(user.id, tokens, client)

        self._log(SecurityEvent.LOGIN_SUCCEEDED, client, email=user.email, user_id=user.id)
        return AuthenticatedUser(user=user, session=session, tokens=tokens)

    def refresh(self, refresh_token: str, client: ClientInfo | None = None) -> AuthenticatedUser:
        """Exchange a refresh token for a new pair on the same session.

        Raises:
            TokenError: Refresh token signature invalid or expired.
            AppError(UNAUTHORIZED): Session gone or user no longer active.
        """
        claims = self._tokens.verify_refresh(refresh_token)

        session = self._sessions.find_active_by_refresh_token(refresh_token)
        if session is None or session.user_id != claims.user_id:
            self._log(SecurityEvent.TOKEN_REFRESH_FAILED, client, user_id=claims.user_id)
            raise AppError.unauthorized("Invalid or expired refresh token")

        user = self._credentials.find_by_id(claims.user_id)
        if user is None or not user.is_active:
            self._log(SecurityEvent.TOKEN_REFRESH_FAILED, client, user_id=claims.user_id)
            raise AppError.unauthorized("User not found or inactive")

        tokens = self._tokens.issue(user)
        rotated = self._sessions.rotate_tokens(session, tokens)
        if rotated is None:
            raise AppError.unauthorized("Invalid or expired refresh token")

        self._log(SecurityEvent.TOKEN_REFRESHED, client, user_id=user.id)
        return AuthenticatedUser(user=user, session=rotated, tokens=tokens)

    def logout(self, access_token: str, client: ClientInfo | None = None) -> None:
        """Invalidate the session holding this access token. Idempotent."""
        session = self._sessions.find_active_by_access_token(access_token)
        if session is None:
            return

        self._sessions.invalidate(session)
        self._log(SecurityEvent.LOGOUT, client, user_id=session.user_id)

    # =========================================================================
    # Passwords
    # =========================================================================

    def forgot_password(self, email: str, client: ClientInfo | None = None) -> None:
        """Email a password reset code. Unknown emails are a silent no-op.

        Raises:
            RateLimitedError: Previous code sent too recently.
            NotificationFailedError: Email delivery failed.
        """
        user = self._credentials.find_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return

        code = self._codes.issue(user.id, user.email, CodePurpose.PASSWORD_RESET)
        self._log(SecurityEvent.PASSWORD_RESET_REQUESTED, client, email=user.email, user_id=user.id)
        self._deliver(code, client)

    def reset_password(self, request: ResetPasswordRequest, client: ClientInfo | None = None) -> None:
        """Set a new password with a reset code and end every session.

        The failure message is the same whether the code or the email was wrong.

        Raises:
            InvalidOrExpiredCodeError
        """
        email = normalize_email(request.email)

        try:
            verification = self._codes.check(request.code, CodePurpose.PASSWORD_RESET, email)
        except InvalidOrExpiredCodeError:
            self._log(SecurityEvent.PASSWORD_RESET_FAILED, client, email=email)
            raise InvalidOrExpiredCodeError(_INVALID_RESET)

        user = self._credentials.find_by_id(verification.user_id)
        if user is None or user.email != email:
            self._log(SecurityEvent.PASSWORD_RESET_FAILED, client, email=email)
            raise InvalidOrExpiredCodeError(_INVALID_RESET)

        with self._store.transaction():
            self._credentials.set_password(user.id, request.new_password)
            self._codes.mark_verified(verification)
            self._sessions.invalidate_all_for_user(user.id)

        self._log(SecurityEvent.PASSWORD_RESET, client, email=user.email, user_id=user.id)
        logger.info(f"Password reset for user: {user.id}")

    def change_password(
        self,
        user_id: UUID,
        request: ChangePasswordRequest,
        client: ClientInfo | None = None,
    ) -> None:
        """Replace the password of a signed-in user. Other sessions stay valid.

        Raises:
            AppError(UNAUTHORIZED): Current password wrong.
            AppError(BAD_REQUEST): New password equals current one.
        """
        user = self.get_current_user(user_id)

        if not self._credentials.verify_password(user, request.current_password):
            self._log(SecurityEvent.PASSWORD_CHANGE_FAILED, client, user_id=user.id)
            raise AppError.unauthorized("Current password is incorrect")

        if request.new_password == request.current_password:
            raise AppError.bad_request("New password must be different from current password")

        self._credentials.set_password(user.id, request.new_password)
        self._log(SecurityEvent.PASSWORD_CHANGED, client, user_id=user.id)

    # =========================================================================
    # Profile
    # =========================================================================

    def get_current_user(self, user_id: UUID) -> User:
        user = self._credentials.find_by_id(user_id)
        if user is None:
            raise AppError.not_found("User not found")
        return user

    def update_profile(self, user_id: UUID, update: ProfileUpdate) -> User:
        self.get_current_user(user_id)
        return self._credentials.update_profile(user_id, update)
