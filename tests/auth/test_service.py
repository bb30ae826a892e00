"""Tests for AuthService - account and session workflows end to end.

Runs against the in-memory store with a mocked email channel. Code
generation is pinned so the emailed code is known.
"""

from unittest.mock import ANY
from uuid import uuid4

import pytest

from auth.exceptions import (
    AppError,
    DuplicateEmailError,
    InvalidOrExpiredCodeError,
    NotificationFailedError,
    RateLimitedError,
    TokenMalformedError,
)
from auth.security_logger import SecurityEvent
from auth.types import (
    ChangePasswordRequest,
    ClientInfo,
    CodePurpose,
    LoginRequest,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    UserStatus,
)
from clients.email_client import EmailGatewayError

PASSWORD = "Abc123!@#"
NEW_PASSWORD = "Xyz789$%&"
CLIENT = ClientInfo(ip_address="198.51.100.20", user_agent="pytest")


@pytest.fixture(autouse=True)
def fixed_code(monkeypatch):
    """Every issued code is 123456."""
    monkeypatch.setattr("auth.verification.generate_code", lambda: "123456")


def _register_request(email="new@example.com", **overrides):
    data = {
        "email": email,
        "password": PASSWORD,
        "first_name": "Alice",
        "last_name": "Baker",
    }
    data.update(overrides)
    return RegisterRequest(**data)


def _logged_events(security_logger):
    return [c.args[0] for c in security_logger.log.call_args_list]


class TestRegister:
    def test_creates_pending_account_and_sends_code(self, auth_service, notifier, clock):
        user = auth_service.register(_register_request(), CLIENT)

        assert user.status == UserStatus.PENDING_VERIFICATION
        assert user.email_verified is False
        notifier.send_verification_code.assert_called_once_with(
            email="new@example.com",
            code="123456",
            purpose="email-verification",
            expires_in_minutes=15,
        )

    def test_duplicate_email_rejected(self, auth_service, notifier, clock):
        auth_service.register(_register_request(), CLIENT)
        with pytest.raises(DuplicateEmailError):
            auth_service.register(_register_request(email="NEW@example.com"), CLIENT)
        assert notifier.send_verification_code.call_count == 1

    def test_notification_failure_keeps_account(self, auth_service, credentials, notifier, security_logger, clock):
        notifier.send_verification_code.side_effect = EmailGatewayError("gateway down")

        with pytest.raises(NotificationFailedError):
            auth_service.register(_register_request(), CLIENT)

        assert credentials.find_by_email("new@example.com") is not None
        assert SecurityEvent.NOTIFICATION_FAILED in _logged_events(security_logger)

    def test_logs_registration(self, auth_service, security_logger, clock):
        user = auth_service.register(_register_request(), CLIENT)
        security_logger.log.assert_any_call(
            SecurityEvent.USER_REGISTERED,
            ip_address="198.51.100.20",
            user_agent="pytest",
            email="new@example.com",
            user_id=user.id,
        )


class TestVerifyEmail:
    def test_activates_and_opens_session(self, auth_service, gate, notifier, clock):
        auth_service.register(_register_request(), CLIENT)

        result = auth_service.verify_email("123456", client=CLIENT)

        assert result.user.email_verified is True
        assert result.user.status == UserStatus.ACTIVE
        assert result.session.is_active
        assert gate.authenticate(result.tokens.access_token).user_id == result.user.id
        notifier.send_welcome.assert_called_once_with("new@example.com", "Alice")

    def test_email_scoped_verification(self, auth_service, clock):
        auth_service.register(_register_request(), CLIENT)
        result = auth_service.verify_email("123456", email="new@example.com", client=CLIENT)
        assert result.user.email == "new@example.com"

    def test_code_for_other_email_rejected(self, auth_service, clock):
        auth_service.register(_register_request(), CLIENT)
        with pytest.raises(InvalidOrExpiredCodeError):
            auth_service.verify_email("123456", email="someone@example.com", client=CLIENT)

    def test_code_used_once(self, auth_service, clock):
        auth_service.register(_register_request(), CLIENT)
        auth_service.verify_email("123456", client=CLIENT)
        with pytest.raises(InvalidOrExpiredCodeError):
            auth_service.verify_email("123456", client=CLIENT)

    def test_expired_code_rejected(self, auth_service, clock):
        auth_service.register(_register_request(), CLIENT)
        clock.advance(minutes=15, seconds=1)
        with pytest.raises(InvalidOrExpiredCodeError):
            auth_service.verify_email("123456", client=CLIENT)

    def test_suspended_account_refused(self, auth_service, credentials, clock):
        user = auth_service.register(_register_request(), CLIENT)
        credentials.update_status(user.id, UserStatus.SUSPENDED)

        with pytest.raises(AppError) as exc_info:
            auth_service.verify_email("123456", client=CLIENT)

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Your account is suspended. Please contact support."
        assert credentials.find_by_id(user.id).email_verified is False

    def test_welcome_failure_ignored(self, auth_service, notifier, clock):
        notifier.send_welcome.side_effect = EmailGatewayError("gateway down")
        auth_service.register(_register_request(), CLIENT)

        result = auth_service.verify_email("123456", client=CLIENT)

        assert result.user.is_active

    def test_failed_attempt_logged(self, auth_service, security_logger, clock):
        auth_service.register(_register_request(), CLIENT)
        with pytest.raises(InvalidOrExpiredCodeError):
            auth_service.verify_email("999999", client=CLIENT)
        assert SecurityEvent.VERIFICATION_FAILED in _logged_events(security_logger)


class TestResendVerification:
    def test_unknown_email_is_silent(self, auth_service, notifier, clock):
        auth_service.resend_verification("ghost@example.com", CLIENT)
        notifier.send_verification_code.assert_not_called()

    def test_already_verified_rejected(self, auth_service, make_user, clock):
        make_user(email="done@example.com")
        with pytest.raises(AppError) as exc_info:
            auth_service.resend_verification("done@example.com", CLIENT)
        assert exc_info.value.message == "Email is already verified"

    def test_cooldown_enforced(self, auth_service, clock):
        auth_service.register(_register_request(), CLIENT)
        clock.advance(seconds=10)
        with pytest.raises(RateLimitedError) as exc_info:
            auth_service.resend_verification("new@example.com", CLIENT)
        assert exc_info.value.retry_after_seconds == 50

    def test_resend_after_cooldown(self, auth_service, notifier, clock):
        auth_service.register(_register_request(), CLIENT)
        clock.advance(seconds=61)

        auth_service.resend_verification("new@example.com", CLIENT)

        assert notifier.send_verification_code.call_count == 2
        assert auth_service.verify_email("123456", client=CLIENT).user.is_active


class TestLogin:
    def test_success(self, auth_service, make_user, gate, clock):
        user = make_user(email="login@example.com")

        result = auth_service.login(LoginRequest(email="LOGIN@example.com", password=PASSWORD), CLIENT)

        assert result.user.id == user.id
        assert result.user.metadata.login_count == 1
        assert result.user.metadata.ip_address == "198.51.100.20"
        assert gate.authenticate(result.tokens.access_token).user_id == user.id

    def test_unknown_email_and_wrong_password_look_the_same(self, auth_service, make_user, clock):
        make_user(email="login@example.com")

        with pytest.raises(AppError) as unknown:
            auth_service.login(LoginRequest(email="ghost@example.com", password=PASSWORD), CLIENT)
        with pytest.raises(AppError) as wrong:
            auth_service.login(LoginRequest(email="login@example.com", password="Wrong123!@#"), CLIENT)

        assert unknown.value.status_code == wrong.value.status_code == 401
        assert unknown.value.message == wrong.value.message == "Invalid email or password"

    def test_failures_counted_and_reset(self, auth_service, credentials, make_user, clock):
        user = make_user(email="login@example.com")
        for _ in range(3):
            with pytest.raises(AppError):
                auth_service.login(LoginRequest(email="login@example.com", password="Wrong123!@#"), CLIENT)

        assert credentials.find_by_id(user.id).metadata.failed_login_attempts == 3

        auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)
        assert credentials.find_by_id(user.id).metadata.failed_login_attempts == 0

    def test_unverified_account_forbidden(self, auth_service, clock):
        auth_service.register(_register_request(), CLIENT)

        with pytest.raises(AppError) as exc_info:
            auth_service.login(LoginRequest(email="new@example.com", password=PASSWORD), CLIENT)

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Please verify your email before logging in"

    def test_wrong_password_on_unverified_is_unauthorized(self, auth_service, clock):
        """Password is checked before account state."""
        auth_service.register(_register_request(), CLIENT)
        with pytest.raises(AppError) as exc_info:
            auth_service.login(LoginRequest(email="new@example.com", password="Wrong123!@#"), CLIENT)
        assert exc_info.value.status_code == 401

    def test_suspended_account_forbidden(self, auth_service, credentials, make_user, clock):
        user = make_user(email="login@example.com")
        credentials.update_status(user.id, UserStatus.SUSPENDED)

        with pytest.raises(AppError) as exc_info:
            auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)

        assert exc_info.value.status_code == 403
        assert "suspended" in exc_info.value.message

    def test_each_login_gets_own_session(self, auth_service, make_user, clock):
        make_user(email="login@example.com")
        request = LoginRequest(email="login@example.com", password=PASSWORD)
        first = auth_service.login(request, CLIENT)
        second = auth_service.login(request, CLIENT)
        assert first.session.id != second.session.id
        assert first.tokens.access_token != second.tokens.access_token


class TestRefresh:
    def test_rotates_pair_on_same_session(self, auth_service, make_user, sessions, clock):
        make_user(email="login@example.com")
        login = auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)

        refreshed = auth_service.refresh(login.tokens.refresh_token, CLIENT)

        assert refreshed.session.id == login.session.id
        assert refreshed.tokens.refresh_token != login.tokens.refresh_token
        assert sessions.find_active_by_refresh_token(login.tokens.refresh_token) is None

    def test_old_refresh_token_rejected_after_rotation(self, auth_service, make_user, clock):
        make_user(email="login@example.com")
        login = auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)
        auth_service.refresh(login.tokens.refresh_token, CLIENT)

        with pytest.raises(AppError) as exc_info:
            auth_service.refresh(login.tokens.refresh_token, CLIENT)

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Invalid or expired refresh token"

    def test_access_token_not_accepted(self, auth_service, make_user, clock):
        make_user(email="login@example.com")
        login = auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)
        with pytest.raises(TokenMalformedError):
            auth_service.refresh(login.tokens.access_token, CLIENT)

    def test_logged_out_session_cannot_refresh(self, auth_service, make_user, clock):
        make_user(email="login@example.com")
        login = auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)
        auth_service.logout(login.tokens.access_token, CLIENT)

        with pytest.raises(AppError) as exc_info:
            auth_service.refresh(login.tokens.refresh_token, CLIENT)
        assert exc_info.value.status_code == 401

    def test_suspended_user_cannot_refresh(self, auth_service, credentials, make_user, clock):
        user = make_user(email="login@example.com")
        login = auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)
        credentials.update_status(user.id, UserStatus.SUSPENDED)

        with pytest.raises(AppError) as exc_info:
            auth_service.refresh(login.tokens.refresh_token, CLIENT)
        assert exc_info.value.message == "User not found or inactive"


class TestLogout:
    def test_invalidates_session(self, auth_service, make_user, gate, clock):
        make_user(email="login@example.com")
        login = auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)

        auth_service.logout(login.tokens.access_token, CLIENT)

        with pytest.raises(AppError) as exc_info:
            gate.authenticate(login.tokens.access_token)
        assert exc_info.value.message == "Invalid or expired session"

    def test_idempotent(self, auth_service, make_user, clock):
        make_user(email="login@example.com")
        login = auth_service.login(LoginRequest(email="login@example.com", password=PASSWORD), CLIENT)
        auth_service.logout(login.tokens.access_token, CLIENT)
        auth_service.logout(login.tokens.access_token, CLIENT)
        auth_service.logout("never-issued", CLIENT)


class TestPasswordReset:
    def test_forgot_unknown_email_is_silent(self, auth_service, notifier, clock):
        auth_service.forgot_password("ghost@example.com", CLIENT)
        notifier.send_verification_code.assert_not_called()

    def test_forgot_sends_reset_code(self, auth_service, make_user, notifier, clock):
        make_user(email="reset@example.com")
        auth_service.forgot_password("reset@example.com", CLIENT)
        notifier.send_verification_code.assert_called_once_with(
            email="reset@example.com",
            code="123456",
            purpose=CodePurpose.PASSWORD_RESET.value,
            expires_in_minutes=15,
        )

    def test_reset_changes_password_and_ends_all_sessions(self, auth_service, make_user, gate, clock):
        make_user(email="reset@example.com")
        request = LoginRequest(email="reset@example.com", password=PASSWORD)
        sessions_before = [auth_service.login(request, CLIENT) for _ in range(3)]
        auth_service.forgot_password("reset@example.com", CLIENT)

        auth_service.reset_password(
            ResetPasswordRequest(email="reset@example.com", code="123456", new_password=NEW_PASSWORD),
            CLIENT,
        )

        for login in sessions_before:
            with pytest.raises(AppError):
                gate.authenticate(login.tokens.access_token)
        with pytest.raises(AppError):
            auth_service.login(request, CLIENT)
        auth_service.login(LoginRequest(email="reset@example.com", password=NEW_PASSWORD), CLIENT)

    def test_reset_code_for_other_email_rejected(self, auth_service, make_user, clock):
        make_user(email="reset@example.com")
        make_user(email="other@example.com")
        auth_service.forgot_password("reset@example.com", CLIENT)

        with pytest.raises(InvalidOrExpiredCodeError) as exc_info:
            auth_service.reset_password(
                ResetPasswordRequest(email="other@example.com", code="123456", new_password=NEW_PASSWORD),
                CLIENT,
            )
        assert exc_info.value.message == "Invalid or expired reset code"

    def test_reset_code_single_use(self, auth_service, make_user, clock):
        make_user(email="reset@example.com")
        auth_service.forgot_password("reset@example.com", CLIENT)
        request = ResetPasswordRequest(email="reset@example.com", code="123456", new_password=NEW_PASSWORD)
        auth_service.reset_password(request, CLIENT)

        with pytest.raises(InvalidOrExpiredCodeError):
            auth_service.reset_password(request, CLIENT)

    def test_verification_code_not_usable_for_reset(self, auth_service, clock):
        auth_service.register(_register_request(email="reset@example.com"), CLIENT)
        with pytest.raises(InvalidOrExpiredCodeError):
            auth_service.reset_password(
                ResetPasswordRequest(email="reset@example.com", code="123456", new_password=NEW_PASSWORD),
                CLIENT,
            )


class TestChangePassword:
    def test_changes_password_keeps_sessions(self, auth_service, make_user, gate, clock):
        user = make_user(email="change@example.com")
        login = auth_service.login(LoginRequest(email="change@example.com", password=PASSWORD), CLIENT)

        auth_service.change_password(
            user.id, ChangePasswordRequest(current_password=PASSWORD, new_password=NEW_PASSWORD), CLIENT
        )

        assert gate.authenticate(login.tokens.access_token).user_id == user.id
        auth_service.login(LoginRequest(email="change@example.com", password=NEW_PASSWORD), CLIENT)

    def test_wrong_current_password(self, auth_service, make_user, security_logger, clock):
        user = make_user(email="change@example.com")
        with pytest.raises(AppError) as exc_info:
            auth_service.change_password(
                user.id,
                ChangePasswordRequest(current_password="Wrong123!@#", new_password=NEW_PASSWORD),
                CLIENT,
            )
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Current password is incorrect"
        security_logger.log.assert_any_call(
            SecurityEvent.PASSWORD_CHANGE_FAILED, ip_address=ANY, user_agent=ANY, user_id=user.id
        )


class TestProfile:
    def test_get_current_user(self, auth_service, make_user, clock):
        user = make_user(email="me@example.com")
        assert auth_service.get_current_user(user.id).email == "me@example.com"

    def test_update_profile(self, auth_service, make_user, clock):
        user = make_user(email="me@example.com")
        updated = auth_service.update_profile(user.id, ProfileUpdate(company="Solar Co", email="x@example.com"))
        assert updated.company == "Solar Co"
        assert updated.email == "me@example.com"

    def test_missing_user(self, auth_service, clock):
        with pytest.raises(AppError) as exc_info:
            auth_service.get_current_user(uuid4())
        assert exc_info.value.status_code == 404
