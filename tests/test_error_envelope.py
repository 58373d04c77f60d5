"""Tests for the error envelope format and exception mapping.

Error responses share one stable shape:
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

from sessionguard.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from sessionguard.api.schemas import Envelope, ErrorBody
from sessionguard.service.errors import (
    NotFoundError,
    SessionInvalidError,
    TokenExpiredError,
    TokenInactiveError,
    TokenRevokedError,
)
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailableError


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="token_revoked", message="refresh token has been revoked")
        assert error.code == "token_revoked"
        assert error.details is None

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_unknown_code_raises(self):
        """Only the stable code set is accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="Too many requests")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="session_invalid", message="gone", details={"id": "s1"}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["error"]["code"] == "session_invalid"
        assert dumped["error"]["details"] == {"id": "s1"}
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (503, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_mapping_only_uses_stable_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)

        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["status"] == "error"
        assert data["error"]["code"] == "not_found"
        assert data["error"]["details"] is None
        assert "request_id" in data


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    raisers = {
        "expired": TokenExpiredError("refresh token has expired"),
        "revoked": TokenRevokedError("refresh token has been revoked"),
        "inactive": TokenInactiveError("refresh token is no longer active"),
        "session": SessionInvalidError("session is no longer valid"),
        "missing": NotFoundError("session not found", detail={"session_id": "s1"}),
        "conflict": ConstraintViolation("duplicate", {"operation": "create_session"}),
        "store": StoreUnavailableError("get_session", OSError("connection refused")),
        "crash": RuntimeError("unexpected"),
    }

    @app.get("/raise/{kind}")
    async def raise_kind(kind: str):
        raise raisers[kind]

    @app.get("/typed/{count}")
    async def typed(count: int):
        return {"count": count}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    """Tests for exception to envelope mapping."""

    @pytest.mark.parametrize(
        "kind,status,code",
        [
            ("expired", 401, "token_expired"),
            ("revoked", 401, "token_revoked"),
            ("inactive", 401, "token_inactive"),
            ("session", 401, "session_invalid"),
            ("missing", 404, "not_found"),
            ("conflict", 409, "conflict"),
            ("store", 503, "server_error"),
            ("crash", 500, "server_error"),
        ],
    )
    def test_exception_maps_to_envelope(self, error_client, kind, status, code):
        response = error_client.get(f"/raise/{kind}")

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code

    def test_store_failure_hides_driver_detail(self, error_client):
        body = error_client.get("/raise/store").json()

        assert "connection refused" not in body["error"]["message"]

    def test_request_validation_is_enveloped(self, error_client):
        response = error_client.get("/typed/not-a-number")

        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)
