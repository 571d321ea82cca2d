"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<id>"
}
"""

import pytest
from pydantic import ValidationError

from levelup.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from levelup.api.schemas import Envelope, ErrorBody
from levelup.service.errors import (
    ConflictError,
    ServiceError,
    TokenExpiredError,
    VerificationRequiredError,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="not_found", message="Exercise not found")
        assert error.details is None

    def test_details_accept_object_and_list(self):
        assert ErrorBody(code="validation_error", message="x", details={"a": 1}).details == {"a": 1}
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    @pytest.mark.parametrize(
        "code",
        ["invalid_credentials", "token_expired", "token_invalidated", "verification_required"],
    )
    def test_auth_codes_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthenticated"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(429) == "rate_limited"

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="m")

    def test_error_response_shape(self):
        response = _error_response(404, "Workout not found")
        assert response.status_code == 404
        body = response.body.decode()
        assert '"status":"error"' in body
        assert '"code":"not_found"' in body


class TestServiceErrors:
    def test_defaults(self):
        error = ConflictError("duplicate")
        assert error.status_code == 409
        assert error.error_code == "conflict"
        assert error.detail == {}

    def test_overrides(self):
        error = ServiceError("custom", status_code=418, error_code="server_error", detail={"x": 1})
        assert (error.status_code, error.error_code, error.detail) == (418, "server_error", {"x": 1})

    def test_auth_errors_carry_client_hints(self):
        assert TokenExpiredError().detail == {"tokenExpired": True}
        assert VerificationRequiredError("verify").detail == {"requiresVerification": True}


class TestHttpEnvelope:
    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_request_id_round_trip(self, client):
        response = client.get("/api/auth/user", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_success_envelope_carries_request_id(self, client, auth_headers):
        headers = {**auth_headers("lifter"), "X-Request-ID": "req-ok"}
        body = client.get("/api/auth/user", headers=headers).json()
        assert body["status"] == "ok"
        assert body["error"] is None
        assert body["request_id"] == "req-ok"

    def test_malformed_json_is_validation_error(self, client):
        response = client.post(
            "/api/auth/login",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unexpected_failure_is_masked(self, client, auth_headers, monkeypatch):
        from levelup.service.runtime import get_runtime

        headers = auth_headers("lifter")

        def _boom(user):
            raise RuntimeError("database exploded")

        monkeypatch.setattr(get_runtime().exercises, "list_for", _boom)
        failing = type(client)(client.app, raise_server_exceptions=False)
        response = failing.get("/api/exercises", headers=headers)
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "exploded" not in response.text
