"""Tests for the global exception handlers."""

from uuid import UUID

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware
from auth.exceptions import AppError, InvalidOrExpiredCodeError, RateLimitedError
from auth.types import LoginRequest


@pytest.fixture
def client():
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    @app.get("/forbidden")
    def forbidden():
        raise AppError.forbidden("Admin access required")

    @app.get("/bad-code")
    def bad_code():
        raise InvalidOrExpiredCodeError()

    @app.get("/limited")
    def limited():
        raise RateLimitedError(42)

    @app.get("/internal")
    def internal():
        raise AppError.internal("connection string leaked")

    @app.get("/crash")
    def crash():
        raise RuntimeError("stack details")

    @app.get("/items/{item_id}")
    def item(item_id: UUID):
        return {"item_id": str(item_id)}

    @app.post("/login")
    def login(body: LoginRequest):
        return {"email": body.email}

    return TestClient(app, raise_server_exceptions=False)


class TestAppErrors:

    def test_operational_error_passes_through(self, client):
        response = client.get("/forbidden")

        assert response.status_code == 403
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "FORBIDDEN"
        assert body["error"]["message"] == "Admin access required"

    def test_subclass_code(self, client):
        response = client.get("/bad-code")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_CODE"

    def test_rate_limited_sets_retry_after(self, client):
        response = client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["details"] == {"retry_after_seconds": 42}

    def test_non_operational_masked(self, client):
        response = client.get("/internal")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "An internal error occurred"
        assert "leaked" not in response.text

    def test_request_id_in_error_meta(self, client):
        response = client.get("/forbidden", headers={"X-Request-ID": "err-1"})
        assert response.json()["meta"]["request_id"] == "err-1"


class TestValidationErrors:

    def test_field_details(self, client):
        response = client.post("/login", json={"email": "not-an-email", "password": "x"})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["message"] == "Validation failed"
        assert any(detail["field"] == "email" for detail in error["details"])

    def test_malformed_path_id(self, client):
        response = client.get("/items/not-a-uuid")

        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "INVALID_ID",
            "message": "Invalid id format",
            "details": None,
        }

    def test_valid_path_id(self, client):
        item_id = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"
        assert client.get(f"/items/{item_id}").json() == {"item_id": item_id}


class TestUnhandledErrors:

    def test_generic_500(self, client):
        response = client.get("/crash")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert "stack details" not in response.text
