"""Tests for SecurityLogger - audit trail to log and database."""

import logging
from unittest.mock import Mock
from uuid import uuid4

import pytest
from psycopg2.extras import Json

from auth.security_logger import SecurityEvent, SecurityLogger
from clients.postgres_client import PostgresClient


class TestLogOnly:
    def test_writes_application_log(self, caplog):
        user_id = uuid4()
        with caplog.at_level(logging.INFO, logger="auth.security_logger"):
            SecurityLogger().log(SecurityEvent.LOGIN_FAILED, email="x@example.com", user_id=user_id)

        assert "security_event=login_failed" in caplog.text
        assert str(user_id) in caplog.text


class TestDatabase:
    def test_inserts_event_row(self):
        db = Mock(spec=PostgresClient)
        user_id = uuid4()

        SecurityLogger(db).log(
            SecurityEvent.PASSWORD_RESET,
            email="reset@example.com",
            user_id=user_id,
            ip_address="192.0.2.44",
            user_agent="pytest",
            details={"reason": "forgot"},
        )

        sql, params = db.execute_returning.call_args.args
        assert "INSERT INTO security_events" in sql
        assert params[:5] == ("password_reset", "reset@example.com", str(user_id), "192.0.2.44", "pytest")
        assert isinstance(params[5], Json)

    def test_optional_fields_null(self):
        db = Mock(spec=PostgresClient)

        SecurityLogger(db).log(SecurityEvent.LOGOUT)

        params = db.execute_returning.call_args.args[1]
        assert params[1:6] == (None, None, None, None, None)

    def test_database_errors_propagate(self):
        db = Mock(spec=PostgresClient)
        db.execute_returning.side_effect = RuntimeError("db down")

        with pytest.raises(RuntimeError, match="db down"):
            SecurityLogger(db).log(SecurityEvent.LOGOUT)
