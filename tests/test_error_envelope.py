"""Tests for the error envelope format and error handling.

Error responses share one envelope:
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

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from ridepass.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from ridepass.api.schemas import _VALID_ERROR_CODES, Envelope, ErrorBody
from ridepass.service.errors import (
    AlreadyRegistered,
    CodeExpired,
    CodeInvalid,
    InvalidCredentials,
    InvalidInput,
    NotVerified,
    RateLimited,
    ServiceError,
    TokenInvalid,
    UserInactive,
    UserNotFound,
    UserSuspended,
)
from ridepass.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="token_invalid", message="bad token")
        assert error.code == "token_invalid"
        assert error.details is None

    def test_details_list(self):
        error = ErrorBody(
            code="invalid_input",
            message="Multiple errors",
            details=[{"field": "identifier"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="not_a_code", message="x")


class TestEnvelope:
    def test_status_must_be_ok_or_error(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc_type, status, code",
        [
            (InvalidInput, 400, "invalid_input"),
            (RateLimited, 429, "rate_limited"),
            (CodeExpired, 400, "code_expired"),
            (CodeInvalid, 400, "code_invalid"),
            (AlreadyRegistered, 400, "already_registered"),
            (NotVerified, 403, "not_verified"),
            (UserSuspended, 403, "user_suspended"),
            (UserInactive, 403, "user_inactive"),
            (TokenInvalid, 401, "token_invalid"),
            (InvalidCredentials, 401, "invalid_credentials"),
            (UserNotFound, 404, "user_not_found"),
        ],
    )
    def test_status_and_code(self, exc_type, status, code):
        exc = exc_type("message")
        assert exc.status_code == status
        assert exc.error_code == code
        assert code in _VALID_ERROR_CODES

    def test_inactive_is_a_suspension(self):
        assert issubclass(UserInactive, UserSuspended)

    def test_overrides(self):
        exc = ServiceError("teapot", status_code=418, error_code="server_error")
        assert exc.status_code == 418
        assert exc.detail == {}


class TestErrorResponse:
    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            assert code in _VALID_ERROR_CODES
        assert _error_code_for_status(599) == "server_error"

    def test_response_shape(self):
        response = _error_response(429, "slow down", {"retry_after": 60})
        body = json.loads(response.body)
        assert response.status_code == 429
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "rate_limited",
            "message": "slow down",
            "details": {"retry_after": 60},
        }
        assert body["request_id"]


@pytest.fixture
def error_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service")
    async def service():
        raise RateLimited("too many", detail={"retry_after": 120})

    @app.get("/unavailable")
    async def unavailable():
        raise StoreUnavailable("redis down")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("duplicate", {"field": "canonical_identifier"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error_sets_retry_after(self, error_app):
        response = error_app.get("/service")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "120"
        assert response.json()["error"]["code"] == "rate_limited"

    def test_store_unavailable_hides_cause(self, error_app):
        response = error_app.get("/unavailable")
        assert response.status_code == 503
        body = response.json()["error"]
        assert body["code"] == "store_unavailable"
        assert "redis" not in body["message"]

    def test_constraint_violation_is_conflict(self, error_app):
        response = error_app.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "canonical_identifier"}

    def test_uncaught_is_generic_500(self, error_app):
        response = error_app.get("/boom")
        assert response.status_code == 500
        body = response.json()["error"]
        assert body["code"] == "server_error"
        assert "secret" not in body["message"]

    def test_unknown_route(self, error_app):
        response = error_app.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
