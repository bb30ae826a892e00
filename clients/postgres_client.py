"""
PostgreSQL client with connection pooling and ambient transactions.

Uses psycopg2 with ThreadedConnectionPool. Outside a transaction every call
checks out a connection and commits on its own. Inside `transaction()` all
calls made by the same thread/task reuse one connection, and the block
commits or rolls back as a unit.
"""

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool

logger = logging.getLogger(__name__)

# Connection of the transaction currently open in this context, if any
_transaction_conn: ContextVar[Any] = ContextVar("transaction_conn", default=None)

# Global JSONB registration flag
_jsonb_registered = False


class PostgresClient:
    """
    PostgreSQL client with optional ambient transaction.

    Usage:
        db = PostgresClient(database_url)

        # Autocommit per statement
        db.execute("SELECT * FROM users WHERE id = %s", (user_id,))

        # All-or-nothing
        with db.transaction():
            db.execute_returning("INSERT INTO users ... RETURNING id", params)
            db.execute_returning("INSERT INTO verification_codes ... RETURNING id", params)
    """

    # Class-level connection pools shared across instances
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str, min_connections: int = 2, max_connections: int = 20):
        self._database_url = database_url
        self._min_connections = min_connections
        self._max_connections = max_connections
        self._ensure_connection_pool()

    def _ensure_connection_pool(self) -> None:
        """Create connection pool if it doesn't exist."""
        with self._pools_lock:
            if self._database_url not in self._connection_pools:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self._min_connections,
                    maxconn=self._max_connections,
                    dsn=self._database_url,
                    connect_timeout=30,
                )

                global _jsonb_registered
                if not _jsonb_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    _jsonb_registered = True

                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")

    @contextmanager
    def _pooled_connection(self):
        """Check a connection out of the pool for the duration of the block."""
        if self._database_url not in self._connection_pools:
            self._ensure_connection_pool()

        pool = self._connection_pools[self._database_url]
        conn = None

        try:
            conn = pool.getconn()
            if conn is None:
                raise RuntimeError("Could not get connection from pool")
            yield conn
        finally:
            if conn:
                pool.putconn(conn)

    @contextmanager
    def get_connection(self):
        """Connection of the open transaction, or a fresh pooled one."""
        conn = _transaction_conn.get()
        if conn is not None:
            yield conn
            return

        with self._pooled_connection() as conn:
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def transaction(self):
        """
        Run the block as one database transaction.

        Nested calls join the outer transaction. Any exception rolls back
        every statement issued inside the block and propagates.
        """
        if _transaction_conn.get() is not None:
            yield
            return

        with self._pooled_connection() as conn:
            token = _transaction_conn.set(conn)
            try:
                yield
                conn.commit()
            except Exception:
                conn.rollback()
                logger.warning("Transaction rolled back")
                raise
            finally:
                _transaction_conn.reset(token)

    @staticmethod
    def in_transaction() -> bool:
        return _transaction_conn.get() is not None

    def _commit(self, conn) -> None:
        """Commit unless an outer transaction owns the connection."""
        if _transaction_conn.get() is None:
            conn.commit()

    def _convert_params(self, params: Tuple | Dict | None) -> Tuple | Dict | None:
        """Convert UUID objects to strings."""
        if params is None:
            return None

        def convert(value: Any) -> Any:
            if isinstance(value, UUID):
                return str(value)
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, tuple):
                return tuple(convert(v) for v in value)
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(params)

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        params = self._convert_params(params)
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                rows = [dict(row) for row in cur.fetchall()] if cur.description else []
                self._commit(conn)
                return rows

    def execute_single(self, query: str, params: Tuple | Dict | None = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_returning(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE/DELETE with RETURNING, return results."""
        params = self._convert_params(params)
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                rows = [dict(row) for row in cur.fetchall()]
                self._commit(conn)
                return rows

    def execute_rowcount(self, query: str, params: Tuple | Dict | None = None) -> int:
        """Execute UPDATE/DELETE without RETURNING, return affected row count."""
        params = self._convert_params(params)
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                count = cur.rowcount
                self._commit(conn)
                return count

    def close(self) -> None:
        """Close connection pool."""
        with self._pools_lock:
            if self._database_url in self._connection_pools:
                self._connection_pools[self._database_url].closeall()
                del self._connection_pools[self._database_url]
                logger.info("Connection pool closed")

    @classmethod
    def close_all_pools(cls) -> None:
        """Close all connection pools."""
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()
