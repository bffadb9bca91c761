"""Tests for the error envelope ``{success: false, error, message[, details]}``."""

import json

import pytest
from pydantic import ValidationError

from fitos_auth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from fitos_auth.api.schemas import ErrorBody
from fitos_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError as ServiceValidationError,
)


class TestErrorBody:
    def test_defaults(self):
        body = ErrorBody(error="INVALID_TOKEN", message="Access token required")
        assert body.success is False
        assert body.details is None

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="no code")


class TestErrorResponse:
    def test_details_omitted_when_empty(self):
        response = _error_response(401, "Invalid email or password", {}, code="INVALID_CREDENTIALS")

        assert response.status_code == 401
        assert json.loads(response.body) == {
            "success": False,
            "error": "INVALID_CREDENTIALS",
            "message": "Invalid email or password",
        }

    def test_details_included(self):
        response = _error_response(400, "weak", {"score": 40})
        assert json.loads(response.body)["details"] == {"score": 40}
        assert json.loads(response.body)["error"] == "VALIDATION_ERROR"

    def test_status_code_fallbacks(self):
        assert _error_code_for_status(404) == _STATUS_TO_CODE[404] == "NOT_FOUND"
        assert _error_code_for_status(418) == "INTERNAL_ERROR"


class TestServiceErrorDefaults:
    @pytest.mark.parametrize(
        "exc_type,status,code",
        [
            (ServiceValidationError, 400, "VALIDATION_ERROR"),
            (AuthenticationError, 401, "INVALID_TOKEN"),
            (ForbiddenError, 403, "INSUFFICIENT_PERMISSIONS"),
            (NotFoundError, 404, "NOT_FOUND"),
            (ConflictError, 409, "CONFLICT"),
            (RateLimitedError, 429, "RATE_LIMIT_EXCEEDED"),
            (ServerError, 500, "INTERNAL_ERROR"),
        ],
    )
    def test_defaults(self, exc_type, status, code):
        exc = exc_type("boom")
        assert (exc.status_code, exc.error_code, exc.detail) == (status, code, {})

    def test_explicit_code_wins(self):
        exc = AuthenticationError("expired", error_code="TOKEN_EXPIRED")
        assert exc.error_code == "TOKEN_EXPIRED"
        assert exc.status_code == 401


class TestEnvelopeOverHttp:
    def test_unknown_route(self, client):
        response = client.get("/api/nowhere")

        assert response.status_code == 404
        assert response.json()["success"] is False
        assert response.json()["error"] == "NOT_FOUND"

    def test_wrong_method(self, client):
        response = client.get("/api/auth/login")

        assert response.status_code == 405
        assert response.json()["error"] == "METHOD_NOT_ALLOWED"

    def test_malformed_body_is_a_validation_error(self, client):
        response = client.post("/api/auth/login", json=["not", "an", "object"])

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["details"]["errors"]

    def test_unexpected_failure_uses_flow_code(self, client, runtime, monkeypatch):
        async def _explode(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(runtime.auth, "login", _explode)

        response = client.post(
            "/api/auth/login",
            json={"email": "member@example.com", "password": "TestPassword123!"},
        )

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "LOGIN_FAILED",
            "message": "Login failed",
        }
        assert "hunter2" not in response.text

    def test_unexpected_failure_in_signup(self, client, runtime, monkeypatch, default_tenant):
        def _explode(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(runtime.store, "create_user_with_password", _explode)

        response = client.post(
            "/api/auth/signup",
            json={
                "firstName": "A",
                "lastName": "B",
                "email": "ab@example.com",
                "password": "TestPassword123!",
            },
        )

        assert response.status_code == 500
        assert response.json()["error"] == "SIGNUP_FAILED"
