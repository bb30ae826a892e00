"""Session lifecycle management.

A session is the server-side record of one issued token pair. Tokens can
be cryptographically valid and still be refused when their session is gone
or inactive.

Expiry is enforced twice with the same predicates: lazily, when a lookup
finds an expired row (the row is flipped inactive and treated as missing),
and by purge_stale(), which the purge scheduler runs periodically.
"""

import logging
from datetime import timedelta
from uuid import UUID, uuid4

from auth.config import AuthConfig
from auth.database import AuthStore
from auth.types import ClientInfo, Session, SessionMetadata, TokenPair
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class SessionManager:
    """Creates, finds, extends, rotates and invalidates sessions."""

    def __init__(self, store: AuthStore, config: AuthConfig):
        self._store = store
        self._config = config

    def create(self, user_id: UUID, tokens: TokenPair, client: ClientInfo | None = None) -> Session:
        """Record a new session for a freshly minted token pair."""
        now = now_utc()
        client = client or ClientInfo()
        session = Session(
            id=uuid4(),
            user_id=user_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            metadata=SessionMetadata(**client.model_dump()),
            is_active=True,
            last_activity_at=now,
            access_expires_at=now + timedelta(seconds=min(tokens.access_ttl, tokens.refresh_ttl)),
            refresh_expires_at=now + timedelta(seconds=tokens.refresh_ttl),
            created_at=now,
            updated_at=now,
        )
        created = self._store.insert_session(session)
        logger.info(f"Session {created.id} created for user {user_id}")
        return created

    def find_active_by_access_token(self, token: str) -> Session | None:
        """Active session for the access token, or None. Expired rows are deactivated."""
        session = self._store.get_session_by_access_token(token)
        if session is None:
            return None

        now = now_utc()
        if session.is_access_expired(now):
            self._store.deactivate_session(session.id, now)
            logger.info(f"Session {session.id} access expired, deactivated")
            return None
        return session

    def find_active_by_refresh_token(self, token: str) -> Session | None:
        """Active session for the refresh token, or None. Expired rows are deactivated."""
        session = self._store.get_session_by_refresh_token(token)
        if session is None:
            return None

        now = now_utc()
        if session.is_refresh_expired(now):
            self._store.deactivate_session(session.id, now)
            logger.info(f"Session {session.id} refresh expired, deactivated")
            return None
        return session

    def extend_activity(self, session: Session) -> Session:
        """Touch last_activity_at and push access expiry forward.

        The new expiry is now + the configured extension, capped at the
        refresh expiry. It only ever moves later; concurrent extensions
        resolve to the maximum.
        """
        now = now_utc()
        target = now + timedelta(minutes=self._config.session_activity_extension_minutes)
        extended = self._store.extend_session(session.id, now, target)
        return extended or session

    def rotate_tokens(self, session: Session, tokens: TokenPair) -> Session | None:
        """Overwrite the session's token pair in place, then extend activity.

        Last writer wins: the previous refresh token simply stops matching.
        Returns None if the session was invalidated in the meantime.
        """
        rotated = self._store.replace_session_tokens(
            session.id, tokens.access_token, tokens.refresh_token, now_utc()
        )
        if rotated is None:
            return None
        return self.extend_activity(rotated)

    def invalidate(self, session: Session) -> bool:
        """Deactivate one session. Safe to call on an inactive one."""
        changed = self._store.deactivate_session(session.id, now_utc())
        if changed:
            logger.info(f"Session {session.id} invalidated")
        return changed

    def invalidate_all_for_user(self, user_id: UUID, except_session_id: UUID | None = None) -> int:
        count = self._store.deactivate_user_sessions(user_id, now_utc(), except_session_id)
        logger.info(f"Invalidated {count} sessions for user {user_id}")
        return count

    def purge_stale(self) -> int:
        """Delete refresh-expired sessions and inactive ones past retention."""
        now = now_utc()
        inactive_before = now - timedelta(days=self._config.session_retention_days)
        deleted = self._store.delete_stale_sessions(now, inactive_before)
        if deleted:
            logger.info(f"Purged {deleted} stale sessions")
        return deleted
