"""In-process AuthStore.

Same contract as PostgresAuthStore, kept in dicts behind one re-entrant
lock. transaction() holds the lock for the whole block and restores a
snapshot if the block raises, so other threads never observe partial
writes. Records are copied on the way in and out; callers never share
mutable state with the store.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from auth.database import USER_UPDATABLE_FIELDS
from auth.exceptions import DuplicateEmailError
from auth.types import ClientInfo, CodePurpose, Session, User, VerificationCode, normalize_email

logger = logging.getLogger(__name__)


class MemoryAuthStore:
    """Thread-safe in-memory AuthStore."""

    def __init__(self):
        self.users: dict[UUID, User] = {}
        self.codes: dict[UUID, VerificationCode] = {}
        self.sessions: dict[UUID, Session] = {}
        # RLock so store methods can be called inside transaction()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = (
                copy.deepcopy(self.users),
                copy.deepcopy(self.codes),
                copy.deepcopy(self.sessions),
            )
            try:
                yield
            except Exception:
                self.users, self.codes, self.sessions = snapshot
                logger.warning("Transaction rolled back")
                raise

    # =========================================================================
    # Users
    # =========================================================================

    def insert_user(self, user: User) -> User:
        email = normalize_email(user.email)
        with self._lock:
            if any(existing.email == email for existing in self.users.values()):
                raise DuplicateEmailError("email")
            stored = user.model_copy(update={"email": email}, deep=True)
            self.users[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_user_by_id(self, user_id: UUID) -> User | None:
        with self._lock:
            user = self.users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def get_user_by_email(self, email: str) -> User | None:
        email = normalize_email(email)
        with self._lock:
            for user in self.users.values():
                if user.email == email:
                    return user.model_copy(deep=True)
            return None

    def update_user(self, user_id: UUID, fields: dict[str, Any], now: datetime) -> User | None:
        unknown = set(fields) - USER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update user fields: {', '.join(sorted(unknown))}")

        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            updated = user.model_copy(update={**fields, "updated_at": now}, deep=True)
            self.users[user_id] = updated
            return updated.model_copy(deep=True)

    def _update_metadata(self, user_id: UUID, now: datetime, changes, **fields) -> User | None:
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            metadata = user.metadata.model_copy(update=changes(user.metadata))
            updated = user.model_copy(update={**fields, "metadata": metadata, "updated_at": now}, deep=True)
            self.users[user_id] = updated
            return updated.model_copy(deep=True)

    def increment_failed_logins(self, user_id: UUID, now: datetime) -> User | None:
        return self._update_metadata(user_id, now, lambda current: {
            "failed_login_attempts": current.failed_login_attempts + 1,
            "last_failed_login": now,
        })

    def record_login(self, user_id: UUID, now: datetime, client: ClientInfo) -> User | None:
        return self._update_metadata(user_id, now, lambda current: {
            "last_login": now,
            "login_count": current.login_count + 1,
            "failed_login_attempts": 0,
            "ip_address": client.ip_address,
            "user_agent": client.user_agent,
            "device_info": client.device_info,
        })

    def record_password_change(self, user_id: UUID, password_hash: str, now: datetime) -> User | None:
        return self._update_metadata(user_id, now, lambda current: {
            "last_password_change": now,
            "password_change_count": current.password_change_count + 1,
        }, password_hash=password_hash)

    # =========================================================================
    # Verification codes
    # =========================================================================

    def lock_code_issue(self, user_id: UUID, purpose: CodePurpose) -> None:
        # transaction() already holds the store lock for the whole block
        pass

    def insert_code(self, code: VerificationCode) -> VerificationCode:
        with self._lock:
            stored = code.model_copy(update={"email": normalize_email(code.email)}, deep=True)
            self.codes[stored.id] = stored
            return stored.model_copy(deep=True)

    def invalidate_codes(self, user_id: UUID, purpose: CodePurpose) -> int:
        count = 0
        with self._lock:
            for code_id, code in self.codes.items():
                if code.user_id == user_id and code.purpose == purpose and not code.verified:
                    self.codes[code_id] = code.model_copy(update={"verified": True})
                    count += 1
        return count

    def _latest(self, matches) -> VerificationCode | None:
        candidates = sorted(matches, key=lambda c: c.sent_at, reverse=True)
        return candidates[0].model_copy(deep=True) if candidates else None

    def get_latest_unverified_code(self, user_id: UUID, purpose: CodePurpose) -> VerificationCode | None:
        with self._lock:
            return self._latest(
                c for c in self.codes.values()
                if c.user_id == user_id and c.purpose == purpose and not c.verified
            )

    def find_unverified_code(self, code: str, purpose: CodePurpose, now: datetime) -> VerificationCode | None:
        with self._lock:
            return self._latest(
                c for c in self.codes.values()
                if c.code == code and c.purpose == purpose and c.is_usable(now)
            )

    def find_live_code_for_email(self, email: str, purpose: CodePurpose, now: datetime) -> VerificationCode | None:
        email = normalize_email(email)
        with self._lock:
            return self._latest(
                c for c in self.codes.values()
                if c.email == email and c.purpose == purpose
                and not c.verified and not c.is_expired(now)
            )

    def increment_code_attempts(self, code_id: UUID, now: datetime) -> VerificationCode | None:
        with self._lock:
            code = self.codes.get(code_id)
            if code is None or not code.is_usable(now):
                return None
            updated = code.model_copy(update={"attempts": code.attempts + 1})
            self.codes[code_id] = updated
            return updated.model_copy(deep=True)

    def mark_code_verified(self, code_id: UUID, now: datetime) -> bool:
        with self._lock:
            code = self.codes.get(code_id)
            if code is None or code.verified:
                return False
            self.codes[code_id] = code.model_copy(update={"verified": True, "verified_at": now})
            return True

    def regenerate_code(self, code_id: UUID, code: str, sent_at: datetime, expires_at: datetime) -> VerificationCode | None:
        with self._lock:
            current = self.codes.get(code_id)
            if current is None or current.verified:
                return None
            updated = current.model_copy(update={
                "code": code,
                "sent_at": sent_at,
                "expires_at": expires_at,
                "attempts": 0,
            })
            self.codes[code_id] = updated
            return updated.model_copy(deep=True)

    def delete_expired_codes(self, now: datetime) -> int:
        with self._lock:
            dead = [
                code_id for code_id, code in self.codes.items()
                if not code.verified and code.is_expired(now)
            ]
            for code_id in dead:
                del self.codes[code_id]
            return len(dead)

    # =========================================================================
    # Sessions
    # =========================================================================

    def insert_session(self, session: Session) -> Session:
        with self._lock:
            for existing in self.sessions.values():
                if existing.access_token == session.access_token or existing.refresh_token == session.refresh_token:
                    raise ValueError("Session token already in use")
            self.sessions[session.id] = session.model_copy(deep=True)
            return session.model_copy(deep=True)

    def _find_active(self, attr: str, token: str) -> Session | None:
        with self._lock:
            for session in self.sessions.values():
                if session.is_active and getattr(session, attr) == token:
                    return session.model_copy(deep=True)
            return None

    def get_session_by_access_token(self, token: str) -> Session | None:
        return self._find_active("access_token", token)

    def get_session_by_refresh_token(self, token: str) -> Session | None:
        return self._find_active("refresh_token", token)

    def deactivate_session(self, session_id: UUID, now: datetime) -> bool:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None or not session.is_active:
                return False
            self.sessions[session_id] = session.model_copy(update={"is_active": False, "updated_at": now})
            return True

    def deactivate_user_sessions(self, user_id: UUID, now: datetime, except_session_id: UUID | None = None) -> int:
        count = 0
        with self._lock:
            for session_id, session in self.sessions.items():
                if session.user_id != user_id or not session.is_active or session_id == except_session_id:
                    continue
                self.sessions[session_id] = session.model_copy(update={"is_active": False, "updated_at": now})
                count += 1
        return count

    def extend_session(self, session_id: UUID, now: datetime, access_expires_at: datetime) -> Session | None:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None or not session.is_active:
                return None
            target = min(access_expires_at, session.refresh_expires_at)
            updated = session.model_copy(update={
                "last_activity_at": max(session.last_activity_at, now),
                "access_expires_at": max(session.access_expires_at, target),
                "updated_at": now,
            })
            self.sessions[session_id] = updated
            return updated.model_copy(deep=True)

    def replace_session_tokens(self, session_id: UUID, access_token: str, refresh_token: str, now: datetime) -> Session | None:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None or not session.is_active:
                return None
            updated = session.model_copy(update={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "updated_at": now,
            })
            self.sessions[session_id] = updated
            return updated.model_copy(deep=True)

    def delete_stale_sessions(self, now: datetime, inactive_before: datetime) -> int:
        with self._lock:
            stale = [
                session_id for session_id, session in self.sessions.items()
                if session.is_refresh_expired(now)
                or (not session.is_active and session.updated_at < inactive_before)
            ]
            for session_id in stale:
                del self.sessions[session_id]
            return len(stale)
