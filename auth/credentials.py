"""User records and password hashing.

Passwords are hashed with bcrypt exactly once per plaintext write. bcrypt
only reads the first 72 bytes of its input; longer secrets are cut there
explicitly so hashing and checking always agree.
"""

import logging
from typing import Any
from uuid import UUID, uuid4

import bcrypt

from auth.database import AuthStore
from auth.exceptions import AppError
from auth.types import (
    ClientInfo,
    ProfileFields,
    ProfileUpdate,
    User,
    UserRole,
    UserStatus,
    normalize_email,
)
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_BCRYPT_MAX_BYTES = 72


def _secret_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password with bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_secret_bytes(password), salt).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(_secret_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


class CredentialStore:
    """Owns User records: identity, password hash, role, status, verification flag."""

    def __init__(self, store: AuthStore, bcrypt_rounds: int = 12):
        self._store = store
        self._rounds = bcrypt_rounds
        # Compared against when the email is unknown so login timing is uniform
        self._dummy_hash = hash_password("dummy-password-for-timing", bcrypt_rounds)

    def _require(self, user: User | None) -> User:
        if user is None:
            raise AppError.not_found("User not found")
        return user

    def create(
        self,
        email: str,
        password: str,
        profile: ProfileFields,
        role: UserRole = UserRole.CUSTOMER,
    ) -> User:
        """Create a pending, unverified account.

        Raises:
            DuplicateEmailError: If the email is already registered.
        """
        now = now_utc()
        user = User(
            id=uuid4(),
            email=normalize_email(email),
            password_hash=hash_password(password, self._rounds),
            first_name=profile.first_name,
            last_name=profile.last_name,
            phone_number=profile.phone_number,
            company=profile.company,
            role=role,
            status=UserStatus.PENDING_VERIFICATION,
            email_verified=False,
            created_at=now,
            updated_at=now,
        )
        created = self._store.insert_user(user)
        logger.info(f"User created: {created.id}")
        return created

    def find_by_email(self, email: str) -> User | None:
        return self._store.get_user_by_email(normalize_email(email))

    def find_by_id(self, user_id: UUID) -> User | None:
        return self._store.get_user_by_id(user_id)

    def verify_password(self, user: User, candidate: str) -> bool:
        return check_password(candidate, user.password_hash)

    def verify_dummy_password(self, candidate: str) -> bool:
        """Spend one bcrypt comparison for an unknown account. Always False."""
        check_password(candidate, self._dummy_hash)
        return False

    def update_status(self, user_id: UUID, status: UserStatus) -> User:
        user = self._store.update_user(user_id, {"status": status}, now_utc())
        return self._require(user)

    def mark_email_verified(self, user_id: UUID) -> User:
        """Flag the email as proven and activate the account."""
        now = now_utc()
        user = self._store.update_user(
            user_id,
            {
                "email_verified": True,
                "email_verified_at": now,
                "status": UserStatus.ACTIVE,
            },
            now,
        )
        return self._require(user)

    def set_password(self, user_id: UUID, password: str) -> User:
        """Overwrite the password hash and record the change."""
        password_hash = hash_password(password, self._rounds)
        return self._require(self._store.record_password_change(user_id, password_hash, now_utc()))

    def record_login_success(self, user: User, client: ClientInfo | None = None) -> User:
        """Reset the failure counter and record login time and origin."""
        return self._require(self._store.record_login(user.id, now_utc(), client or ClientInfo()))

    def record_login_failure(self, user: User) -> User:
        """Count one failed password attempt. No lockout is applied."""
        return self._require(self._store.increment_failed_logins(user.id, now_utc()))

    def update_profile(self, user_id: UUID, update: ProfileUpdate) -> User:
        """Apply self-service edits. Identity and security fields are never touched."""
        fields: dict[str, Any] = {
            name: getattr(update, name) for name in update.model_fields_set
        }
        if not fields:
            return self._require(self._store.get_user_by_id(user_id))
        return self._require(self._store.update_user(user_id, fields, now_utc()))
