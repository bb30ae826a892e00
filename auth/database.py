"""Storage for users, verification codes and sessions.

AuthStore is the contract the auth components depend on. PostgresAuthStore
is the production implementation; auth.memory_store.MemoryAuthStore keeps
the same contract in process for tests and single-node tooling.

Every statement that must be atomic under concurrent requests (bounded
attempt increment, conditional verify, activity max-merge) is a single SQL
statement here, never a read followed by a write.
"""

import logging
from contextlib import AbstractContextManager
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

import psycopg2.errors
from psycopg2.extras import Json
from pydantic import BaseModel

from clients.postgres_client import PostgresClient
from auth.exceptions import DuplicateEmailError
from auth.types import ClientInfo, CodePurpose, Session, User, VerificationCode

logger = logging.getLogger(__name__)


# Columns an update may touch; anything else is a programming error
USER_UPDATABLE_FIELDS = frozenset({
    "password_hash",
    "first_name",
    "last_name",
    "phone_number",
    "company",
    "address",
    "role",
    "status",
    "email_verified",
    "email_verified_at",
    "permissions",
    "metadata",
})

_USER_COLUMNS = """id, email, password_hash, first_name, last_name, phone_number,
       company, address, role, status, email_verified, email_verified_at,
       permissions, metadata, created_at, updated_at"""

_CODE_COLUMNS = """id, user_id, email, code, purpose, created_at, sent_at,
       expires_at, attempts, max_attempts, verified, verified_at"""

_SESSION_COLUMNS = """id, user_id, access_token, refresh_token, metadata, is_active,
       last_activity_at, access_expires_at, refresh_expires_at,
       created_at, updated_at"""


class AuthStore(Protocol):
    """Persistence contract shared by the Postgres and in-memory stores."""

    def transaction(self) -> AbstractContextManager: ...

    # Users
    def insert_user(self, user: User) -> User: ...
    def get_user_by_id(self, user_id: UUID) -> User | None: ...
    def get_user_by_email(self, email: str) -> User | None: ...
    def update_user(self, user_id: UUID, fields: dict[str, Any], now: datetime) -> User | None: ...
    def increment_failed_logins(self, user_id: UUID, now: datetime) -> User | None: ...
    def record_login(self, user_id: UUID, now: datetime, client: ClientInfo) -> User | None: ...
    def record_password_change(self, user_id: UUID, password_hash: str, now: datetime) -> User | None: ...

    # Verification codes
    def lock_code_issue(self, user_id: UUID, purpose: CodePurpose) -> None: ...
    def insert_code(self, code: VerificationCode) -> VerificationCode: ...
    def invalidate_codes(self, user_id: UUID, purpose: CodePurpose) -> int: ...
    def get_latest_unverified_code(self, user_id: UUID, purpose: CodePurpose) -> VerificationCode | None: ...
    def find_unverified_code(self, code: str, purpose: CodePurpose, now: datetime) -> VerificationCode | None: ...
    def find_live_code_for_email(self, email: str, purpose: CodePurpose, now: datetime) -> VerificationCode | None: ...
    def increment_code_attempts(self, code_id: UUID, now: datetime) -> VerificationCode | None: ...
    def mark_code_verified(self, code_id: UUID, now: datetime) -> bool: ...
    def regenerate_code(self, code_id: UUID, code: str, sent_at: datetime, expires_at: datetime) -> VerificationCode | None: ...
    def delete_expired_codes(self, now: datetime) -> int: ...

    # Sessions
    def insert_session(self, session: Session) -> Session: ...
    def get_session_by_access_token(self, token: str) -> Session | None: ...
    def get_session_by_refresh_token(self, token: str) -> Session | None: ...
    def deactivate_session(self, session_id: UUID, now: datetime) -> bool: ...
    def deactivate_user_sessions(self, user_id: UUID, now: datetime, except_session_id: UUID | None = None) -> int: ...
    def extend_session(self, session_id: UUID, now: datetime, access_expires_at: datetime) -> Session | None: ...
    def replace_session_tokens(self, session_id: UUID, access_token: str, refresh_token: str, now: datetime) -> Session | None: ...
    def delete_stale_sessions(self, now: datetime, inactive_before: datetime) -> int: ...


def _adapt(value: Any) -> Any:
    """Convert model values into psycopg2 parameters."""
    if isinstance(value, BaseModel):
        return Json(value.model_dump(mode="json"))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_adapt(v) for v in value]
    return value


class PostgresAuthStore:
    """AuthStore backed by PostgreSQL through PostgresClient."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def transaction(self):
        return self._db.transaction()

    # =========================================================================
    # Users
    # =========================================================================

    def insert_user(self, user: User) -> User:
        """Insert user. Raises DuplicateEmailError on unique violation."""
        try:
            rows = self._db.execute_returning(
                f"""INSERT INTO users
                   (id, email, password_hash, first_name, last_name, phone_number,
                    company, address, role, status, email_verified, email_verified_at,
                    permissions, metadata, created_at, updated_at)
                   VALUES (%s, lower(%s), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                   RETURNING {_USER_COLUMNS}""",
                (
                    user.id,
                    user.email,
                    user.password_hash,
                    user.first_name,
                    user.last_name,
                    user.phone_number,
                    user.company,
                    _adapt(user.address),
                    user.role.value,
                    user.status.value,
                    user.email_verified,
                    user.email_verified_at,
                    _adapt(user.permissions),
                    _adapt(user.metadata),
                    user.created_at,
                    user.updated_at,
                ),
            )
        except psycopg2.errors.UniqueViolation:
            logger.info("Duplicate email on user insert")
            raise DuplicateEmailError("email")
        return User.model_validate(rows[0])

    def get_user_by_id(self, user_id: UUID) -> User | None:
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s",
            (user_id,),
        )
        return User.model_validate(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        """Find user by email (case-insensitive)."""
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = lower(%s)",
            (email.strip(),),
        )
        return User.model_validate(row) if row else None

    def update_user(self, user_id: UUID, fields: dict[str, Any], now: datetime) -> User | None:
        """Overwrite the given columns and bump updated_at.

        Returns:
            Updated user, or None if no such user.
        """
        unknown = set(fields) - USER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update user fields: {', '.join(sorted(unknown))}")

        assignments = [f"{name} = %s" for name in fields]
        params = [_adapt(value) for value in fields.values()]
        assignments.append("updated_at = %s")
        params.extend([now, user_id])

        rows = self._db.execute_returning(
            f"""UPDATE users SET {', '.join(assignments)}
                WHERE id = %s
                RETURNING {_USER_COLUMNS}""",
            tuple(params),
        )
        return User.model_validate(rows[0]) if rows else None

    def increment_failed_logins(self, user_id: UUID, now: datetime) -> User | None:
        """Atomically bump metadata.failed_login_attempts."""
        rows = self._db.execute_returning(
            f"""UPDATE users SET
                   metadata = metadata
                       || jsonb_build_object(
                           'failed_login_attempts',
                           COALESCE((metadata->>'failed_login_attempts')::int, 0) + 1,
                           'last_failed_login', to_jsonb(%s::timestamptz))
                   , updated_at = %s
                WHERE id = %s
                RETURNING {_USER_COLUMNS}""",
            (now, now, user_id),
        )
        return User.model_validate(rows[0]) if rows else None

    def record_login(self, user_id: UUID, now: datetime, client: ClientInfo) -> User | None:
        """Bump login_count, clear the failure counter and record the origin in one statement."""
        rows = self._db.execute_returning(
            f"""UPDATE users SET
                   metadata = metadata
                       || jsonb_build_object(
                           'last_login', to_jsonb(%s::timestamptz),
                           'login_count',
                           COALESCE((metadata->>'login_count')::int, 0) + 1,
                           'failed_login_attempts', 0,
                           'ip_address', %s::text,
                           'user_agent', %s::text,
                           'device_info', %s::text)
                   , updated_at = %s
                WHERE id = %s
                RETURNING {_USER_COLUMNS}""",
            (now, client.ip_address, client.user_agent, client.device_info, now, user_id),
        )
        return User.model_validate(rows[0]) if rows else None

    def record_password_change(self, user_id: UUID, password_hash: str, now: datetime) -> User | None:
        """Store the new hash and bump the change counters in one statement."""
        rows = self._db.execute_returning(
            f"""UPDATE users SET
                   password_hash = %s,
                   metadata = metadata
                       || jsonb_build_object(
                           'last_password_change', to_jsonb(%s::timestamptz),
                           'password_change_count',
                           COALESCE((metadata->>'password_change_count')::int, 0) + 1)
                   , updated_at = %s
                WHERE id = %s
                RETURNING {_USER_COLUMNS}""",
            (password_hash, now, now, user_id),
        )
        return User.model_validate(rows[0]) if rows else None

    # =========================================================================
    # Verification codes
    # =========================================================================

    def lock_code_issue(self, user_id: UUID, purpose: CodePurpose) -> None:
        """Serialize code issuance for (user, purpose) until the transaction ends."""
        if not self._db.in_transaction():
            raise RuntimeError("lock_code_issue must be called inside transaction()")
        self._db.execute(
            "SELECT pg_advisory_xact_lock(hashtext(%s))",
            (f"verification_code:{user_id}:{purpose.value}",),
        )

    def insert_code(self, code: VerificationCode) -> VerificationCode:
        rows = self._db.execute_returning(
            f"""INSERT INTO verification_codes
               (id, user_id, email, code, purpose, created_at, sent_at,
                expires_at, attempts, max_attempts, verified, verified_at)
               VALUES (%s, %s, lower(%s), %s, %s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING {_CODE_COLUMNS}""",
            (
                code.id,
                code.user_id,
                code.email,
                code.code,
                code.purpose.value,
                code.created_at,
                code.sent_at,
                code.expires_at,
                code.attempts,
                code.max_attempts,
                code.verified,
                code.verified_at,
            ),
        )
        return VerificationCode.model_validate(rows[0])

    def invalidate_codes(self, user_id: UUID, purpose: CodePurpose) -> int:
        """Kill every unverified code for (user, purpose). Returns count."""
        return self._db.execute_rowcount(
            """UPDATE verification_codes SET verified = true
               WHERE user_id = %s AND purpose = %s AND verified = false""",
            (user_id, purpose.value),
        )

    def get_latest_unverified_code(self, user_id: UUID, purpose: CodePurpose) -> VerificationCode | None:
        row = self._db.execute_single(
            f"""SELECT {_CODE_COLUMNS} FROM verification_codes
                WHERE user_id = %s AND purpose = %s AND verified = false
                ORDER BY sent_at DESC
                LIMIT 1""",
            (user_id, purpose.value),
        )
        return VerificationCode.model_validate(row) if row else None

    def find_unverified_code(self, code: str, purpose: CodePurpose, now: datetime) -> VerificationCode | None:
        """Live code with this value; dead rows never shadow a live one."""
        row = self._db.execute_single(
            f"""SELECT {_CODE_COLUMNS} FROM verification_codes
                WHERE code = %s AND purpose = %s AND verified = false
                  AND expires_at > %s AND attempts < max_attempts
                ORDER BY sent_at DESC
                LIMIT 1""",
            (code, purpose.value, now),
        )
        return VerificationCode.model_validate(row) if row else None

    def find_live_code_for_email(self, email: str, purpose: CodePurpose, now: datetime) -> VerificationCode | None:
        row = self._db.execute_single(
            f"""SELECT {_CODE_COLUMNS} FROM verification_codes
                WHERE email = lower(%s) AND purpose = %s
                  AND verified = false AND expires_at > %s
                ORDER BY sent_at DESC
                LIMIT 1""",
            (email.strip(), purpose.value, now),
        )
        return VerificationCode.model_validate(row) if row else None

    def increment_code_attempts(self, code_id: UUID, now: datetime) -> VerificationCode | None:
        """Count one attempt if the code is still usable.

        Returns:
            The code after the increment, or None when it was already
            verified, expired or out of attempts.
        """
        rows = self._db.execute_returning(
            f"""UPDATE verification_codes SET attempts = attempts + 1
                WHERE id = %s AND verified = false
                  AND attempts < max_attempts AND expires_at > %s
                RETURNING {_CODE_COLUMNS}""",
            (code_id, now),
        )
        return VerificationCode.model_validate(rows[0]) if rows else None

    def mark_code_verified(self, code_id: UUID, now: datetime) -> bool:
        """Consume the code. False if another caller consumed it first."""
        count = self._db.execute_rowcount(
            """UPDATE verification_codes SET verified = true, verified_at = %s
               WHERE id = %s AND verified = false""",
            (now, code_id),
        )
        return count > 0

    def regenerate_code(self, code_id: UUID, code: str, sent_at: datetime, expires_at: datetime) -> VerificationCode | None:
        rows = self._db.execute_returning(
            f"""UPDATE verification_codes
                SET code = %s, sent_at = %s, expires_at = %s, attempts = 0
                WHERE id = %s AND verified = false
                RETURNING {_CODE_COLUMNS}""",
            (code, sent_at, expires_at, code_id),
        )
        return VerificationCode.model_validate(rows[0]) if rows else None

    def delete_expired_codes(self, now: datetime) -> int:
        return self._db.execute_rowcount(
            "DELETE FROM verification_codes WHERE verified = false AND expires_at <= %s",
            (now,),
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    def insert_session(self, session: Session) -> Session:
        rows = self._db.execute_returning(
            f"""INSERT INTO sessions
               (id, user_id, access_token, refresh_token, metadata, is_active,
                last_activity_at, access_expires_at, refresh_expires_at,
                created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING {_SESSION_COLUMNS}""",
            (
                session.id,
                session.user_id,
                session.access_token,
                session.refresh_token,
                _adapt(session.metadata),
                session.is_active,
                session.last_activity_at,
                session.access_expires_at,
                session.refresh_expires_at,
                session.created_at,
                session.updated_at,
            ),
        )
        return Session.model_validate(rows[0])

    def get_session_by_access_token(self, token: str) -> Session | None:
        row = self._db.execute_single(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE access_token = %s AND is_active = true",
            (token,),
        )
        return Session.model_validate(row) if row else None

    def get_session_by_refresh_token(self, token: str) -> Session | None:
        row = self._db.execute_single(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE refresh_token = %s AND is_active = true",
            (token,),
        )
        return Session.model_validate(row) if row else None

    def deactivate_session(self, session_id: UUID, now: datetime) -> bool:
        count = self._db.execute_rowcount(
            """UPDATE sessions SET is_active = false, updated_at = %s
               WHERE id = %s AND is_active = true""",
            (now, session_id),
        )
        return count > 0

    def deactivate_user_sessions(self, user_id: UUID, now: datetime, except_session_id: UUID | None = None) -> int:
        if except_session_id is None:
            return self._db.execute_rowcount(
                """UPDATE sessions SET is_active = false, updated_at = %s
                   WHERE user_id = %s AND is_active = true""",
                (now, user_id),
            )
        return self._db.execute_rowcount(
            """UPDATE sessions SET is_active = false, updated_at = %s
               WHERE user_id = %s AND is_active = true AND id <> %s""",
            (now, user_id, except_session_id),
        )

    def extend_session(self, session_id: UUID, now: datetime, access_expires_at: datetime) -> Session | None:
        """Record activity; access expiry only moves forward and never past refresh expiry."""
        rows = self._db.execute_returning(
            f"""UPDATE sessions SET
                   last_activity_at = GREATEST(last_activity_at, %s),
                   access_expires_at = GREATEST(
                       access_expires_at, LEAST(%s, refresh_expires_at)),
                   updated_at = %s
                WHERE id = %s AND is_active = true
                RETURNING {_SESSION_COLUMNS}""",
            (now, access_expires_at, now, session_id),
        )
        return Session.model_validate(rows[0]) if rows else None

    def replace_session_tokens(self, session_id: UUID, access_token: str, refresh_token: str, now: datetime) -> Session | None:
        rows = self._db.execute_returning(
            f"""UPDATE sessions SET access_token = %s, refresh_token = %s, updated_at = %s
                WHERE id = %s AND is_active = true
                RETURNING {_SESSION_COLUMNS}""",
            (access_token, refresh_token, now, session_id),
        )
        return Session.model_validate(rows[0]) if rows else None

    def delete_stale_sessions(self, now: datetime, inactive_before: datetime) -> int:
        """Delete refresh-expired sessions and long-dead inactive ones."""
        return self._db.execute_rowcount(
            """DELETE FROM sessions
               WHERE refresh_expires_at <= %s
                  OR (is_active = false AND updated_at < %s)""",
            (now, inactive_before),
        )
