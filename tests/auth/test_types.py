"""Tests for auth domain types - roles, records, request validation."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from auth.types import (
    ChangePasswordRequest,
    CodePurpose,
    LoginRequest,
    Permission,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    User,
    UserRole,
    UserStatus,
    VerificationCode,
    VerifyEmailRequest,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _register(**overrides):
    data = {
        "email": "new@example.com",
        "password": "Abc123!@#",
        "first_name": "Alice",
        "last_name": "Baker",
    }
    data.update(overrides)
    return RegisterRequest(**data)


def _code(**overrides):
    data = {
        "id": uuid4(),
        "user_id": uuid4(),
        "email": "user@example.com",
        "code": "123456",
        "purpose": CodePurpose.EMAIL_VERIFICATION,
        "created_at": NOW,
        "sent_at": NOW,
        "expires_at": NOW + timedelta(minutes=15),
        "verified": False,
    }
    data.update(overrides)
    return VerificationCode(**data)


class TestRoles:
    """Role rank and permission tables."""

    def test_rank_is_strictly_ordered(self):
        """system-admin > sales-admin > web-admin > helpdesk > customer."""
        ranks = [
            UserRole.SYSTEM_ADMIN.rank,
            UserRole.SALES_ADMIN.rank,
            UserRole.WEB_ADMIN.rank,
            UserRole.HELPDESK.rank,
            UserRole.CUSTOMER.rank,
        ]
        assert ranks == [5, 4, 3, 2, 1]

    def test_customer_permissions(self):
        assert Permission.PLACE_ORDERS in UserRole.CUSTOMER.permissions
        assert Permission.MANAGE_ALL_USERS not in UserRole.CUSTOMER.permissions

    def test_system_admin_permissions_not_inherited(self):
        """Roles are not cumulative: system-admin has no customer permissions."""
        assert Permission.MANAGE_ALL_USERS in UserRole.SYSTEM_ADMIN.permissions
        assert Permission.PLACE_ORDERS not in UserRole.SYSTEM_ADMIN.permissions

    def test_effective_permissions_include_grants(self):
        """Individually granted permissions add to the role's set."""
        user = User(
            id=uuid4(),
            email="helper@example.com",
            password_hash="x",
            first_name="Hal",
            last_name="Per",
            role=UserRole.HELPDESK,
            permissions=[Permission.VIEW_SALES_ANALYTICS],
            created_at=NOW,
            updated_at=NOW,
        )
        effective = user.effective_permissions()
        assert Permission.VIEW_SALES_ANALYTICS in effective
        assert Permission.VIEW_SUPPORT_TICKETS in effective


class TestUser:
    """User record defaults and serialization."""

    def test_defaults_to_pending_customer(self):
        user = User(
            id=uuid4(),
            email="a@example.com",
            password_hash="hash",
            first_name="Al",
            last_name="Bo",
            created_at=NOW,
            updated_at=NOW,
        )
        assert user.role == UserRole.CUSTOMER
        assert user.status == UserStatus.PENDING_VERIFICATION
        assert user.email_verified is False
        assert user.is_active is False

    def test_password_hash_never_serialized(self):
        """password_hash is excluded from dumps and repr."""
        user = User(
            id=uuid4(),
            email="a@example.com",
            password_hash="secret-hash",
            first_name="Al",
            last_name="Bo",
            created_at=NOW,
            updated_at=NOW,
        )
        assert "password_hash" not in user.model_dump()
        assert "secret-hash" not in repr(user)


class TestVerificationCode:
    """Code liveness predicates."""

    def test_fresh_code_is_usable(self):
        assert _code().is_usable(NOW)

    def test_expired_at_exact_boundary(self):
        """A code is expired from expires_at onwards."""
        code = _code()
        assert code.is_expired(code.expires_at)
        assert not code.is_expired(code.expires_at - timedelta(seconds=1))

    def test_exhausted_code_not_usable(self):
        assert not _code(attempts=3).is_usable(NOW)

    def test_verified_code_not_usable(self):
        assert not _code(verified=True).is_usable(NOW)

    def test_verified_flag_required(self):
        """No default for verified - fail closed."""
        data = {
            "id": uuid4(),
            "user_id": uuid4(),
            "email": "user@example.com",
            "code": "123456",
            "purpose": CodePurpose.PASSWORD_RESET,
            "created_at": NOW,
            "sent_at": NOW,
            "expires_at": NOW,
        }
        with pytest.raises(ValidationError):
            VerificationCode(**data)


class TestRegisterRequest:
    """Boundary validation of registration input."""

    def test_email_normalized(self):
        request = _register(email="  Mixed.Case@Example.COM ")
        assert request.email == "mixed.case@example.com"

    @pytest.mark.parametrize("password", [
        "short1!",          # too short
        "alllower123!",     # no uppercase
        "ALLUPPER123!",     # no lowercase
        "NoDigits!!",       # no digit
        "NoSymbols123",     # no symbol
        "A" * 120 + "bc1!aaaaa",  # over 128 characters
    ])
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError):
            _register(password=password)

    def test_strong_password_accepted(self):
        assert _register(password="Str0ng&Pass").password == "Str0ng&Pass"

    @pytest.mark.parametrize("password", ["Abc123!@#", "Pass#word1~", "Tab\tSpace 9x", "Ünïcode1€X"])
    def test_any_symbol_counts(self, password):
        assert _register(password=password).password == password

    def test_short_names_accepted(self):
        request = RegisterRequest(
            email="a@x.com", password="Abc123!@#", first_name="A", last_name="B"
        )
        assert (request.first_name, request.last_name) == ("A", "B")

    def test_mismatched_confirmation_rejected(self):
        with pytest.raises(ValidationError, match="Passwords do not match"):
            _register(confirm_password="Different1!")

    def test_names_stripped_and_bounded(self):
        assert _register(first_name="  Alice ").first_name == "Alice"
        with pytest.raises(ValidationError):
            _register(first_name="   ")
        with pytest.raises(ValidationError):
            _register(last_name="x" * 51)

    def test_invalid_phone_rejected(self):
        with pytest.raises(ValidationError, match="valid phone number"):
            _register(phone_number="not a phone")

    def test_valid_phone_accepted(self):
        assert _register(phone_number="+1 555 1234567").phone_number == "+1 555 1234567"


class TestCodeRequests:
    """Six-digit code validation."""

    @pytest.mark.parametrize("code", ["12345", "1234567", "12a456", ""])
    def test_malformed_code_rejected(self, code):
        with pytest.raises(ValidationError):
            VerifyEmailRequest(code=code)

    def test_verify_email_optional_email_normalized(self):
        request = VerifyEmailRequest(code="123456", email="User@Example.com")
        assert request.email == "user@example.com"

    def test_reset_password_validates_new_password(self):
        with pytest.raises(ValidationError):
            ResetPasswordRequest(email="a@example.com", code="123456", new_password="weak")


class TestChangePasswordRequest:
    def test_same_password_rejected(self):
        with pytest.raises(ValidationError, match="must be different"):
            ChangePasswordRequest(current_password="Abc123!@#", new_password="Abc123!@#")

    def test_valid_change(self):
        request = ChangePasswordRequest(current_password="Old123!@#", new_password="New123!@#")
        assert request.new_password == "New123!@#"


class TestLoginRequest:
    def test_empty_password_rejected(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="a@example.com", password="")


class TestProfileUpdate:
    """Self-service profile edits."""

    def test_security_fields_dropped(self):
        """Unknown keys like role or email never reach the model."""
        update = ProfileUpdate(first_name="Alicia", role="system-admin", email="x@example.com")
        assert update.model_fields_set == {"first_name"}
        assert not hasattr(update, "role")

    def test_empty_update_rejected(self):
        with pytest.raises(ValidationError, match="At least one field"):
            ProfileUpdate()

    def test_only_security_fields_rejected(self):
        """Dropping the unknown keys leaves nothing to update."""
        with pytest.raises(ValidationError, match="At least one field"):
            ProfileUpdate(status="active")

    @pytest.mark.parametrize("field", ["first_name", "last_name"])
    def test_null_name_rejected(self, field):
        with pytest.raises(ValidationError, match="cannot be null"):
            ProfileUpdate(**{field: None})

    def test_omitted_names_untouched(self):
        update = ProfileUpdate(company=None, first_name=" Al ")
        assert update.model_fields_set == {"company", "first_name"}
        assert update.first_name == "Al"
