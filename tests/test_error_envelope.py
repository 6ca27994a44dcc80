"""Tests for the error envelope format and the exception boundary.

Error responses look like:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from khscrm.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from khscrm.api.schemas import Envelope, ErrorBody
from khscrm.service.errors import (
    AuthenticationError,
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidTokenError,
    RateLimitedError,
    RevokedTokenError,
    ServiceError,
    ValidationError,
)
from khscrm.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid token")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    @pytest.mark.parametrize(
        "code",
        ["invalid_credentials", "invalid_token", "token_expired", "token_revoked"],
    )
    def test_auth_codes_are_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="x")

    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_envelope_status_restricted(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")


class TestStatusCodeMapping:
    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _STATUS_TO_CODE[429] == "rate_limited"

    def test_unmapped_statuses_keep_their_class(self):
        assert _error_code_for_status(405) == "method_not_allowed"
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(503) == "server_error"


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc_cls,code",
        [
            (InvalidCredentialsError, "invalid_credentials"),
            (InvalidTokenError, "invalid_token"),
            (ExpiredTokenError, "token_expired"),
            (RevokedTokenError, "token_revoked"),
            (AuthenticationError, "unauthorized"),
        ],
    )
    def test_auth_errors_are_401(self, exc_cls, code):
        exc = exc_cls("nope")
        assert exc.status_code == 401
        assert exc.error_code == code
        assert isinstance(exc, ServiceError)

    def test_rate_limited_carries_window(self):
        exc = RateLimitedError("slow down", limit=5, reset_seconds=30)
        assert exc.status_code == 429
        assert exc.limit == 5
        assert exc.reset_seconds == 30


class _Body(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=8)


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service")
    async def service_error():
        raise ExpiredTokenError("refresh token expired")

    @app.get("/validation")
    async def validation_error():
        raise ValidationError(
            "password does not meet requirements",
            detail=[{"field": "password", "message": "too short"}],
        )

    @app.get("/rate-limited")
    async def rate_limited():
        raise RateLimitedError("Too many requests. Please try again later", limit=5, reset_seconds=42)

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", field="email")

    @app.get("/http")
    async def http_error():
        raise HTTPException(status_code=404, detail="missing")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password is hunter2")

    @app.post("/body")
    async def body(payload: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error_envelope(self, client):
        response = client.get("/service")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"]["code"] == "token_expired"
        assert body["error"]["message"] == "refresh token expired"
        assert body["request_id"]

    def test_validation_error_details_preserved(self, client):
        response = client.get("/validation")

        assert response.status_code == 400
        assert response.json()["error"]["details"] == [
            {"field": "password", "message": "too short"}
        ]

    def test_rate_limited_sets_headers(self, client):
        response = client.get("/rate-limited")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.headers["Retry-After"] == "42"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/conflict")

        assert response.status_code == 409
        body = response.json()
        assert body["error"]["code"] == "conflict"
        assert body["error"]["details"] == {"field": "email"}

    def test_http_exception_wrapped(self, client):
        response = client.get("/http")

        assert response.status_code == 404
        assert response.json()["error"] == {
            "code": "not_found",
            "message": "missing",
            "details": None,
        }

    def test_unhandled_error_does_not_leak(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert body["error"]["message"] == "internal server error"
        assert "hunter2" not in response.text

    def test_request_validation_collects_every_field(self, client):
        response = client.post("/body", json={"email": "x", "password": "short"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        fields = sorted(item["field"] for item in body["error"]["details"])
        assert fields == ["email", "password"]
        assert all(item["message"] for item in body["error"]["details"])

    def test_missing_body_reported(self, client):
        response = client.post("/body")

        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "body"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/does-not-exist")

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_wrong_method_uses_envelope(self, client):
        response = client.post("/service")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "method_not_allowed"
        assert "GET" in response.headers["Allow"]
