"""Tests for the error taxonomy and the response envelope.

Error responses have the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<correlation id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from iamprovider.api.error_handling import _error_code_for_status, _error_response
from iamprovider.api.schemas import Envelope, ErrorBody
from iamprovider.service import errors as error_module
from iamprovider.service.bounded import DependencyTimeoutError, run_bounded
from iamprovider.service.errors import ERROR_STATUS, ErrorKind, ServiceError

EXPECTED_STATUS = {
    "invalid_credentials": 401,
    "account_locked": 423,
    "account_pending_deletion": 403,
    "email_not_verified": 403,
    "token_expired": 401,
    "token_invalid": 401,
    "user_not_found": 404,
    "duplicate_email": 409,
    "password_already_set": 409,
    "password_not_enabled": 400,
    "passkey_challenge_expired": 400,
    "passkey_not_found": 404,
    "passkey_verification_failed": 400,
    "oauth_already_linked": 409,
    "cannot_unlink_only_auth_method": 400,
}


class TestErrorTaxonomy:
    def test_every_kind_has_a_status(self):
        """No error kind can reach the boundary without a mapped status."""
        assert set(ERROR_STATUS) == set(ErrorKind)

    @pytest.mark.parametrize("code,status", sorted(EXPECTED_STATUS.items()))
    def test_identity_error_statuses(self, code, status):
        assert ERROR_STATUS[ErrorKind(code)] == status

    def test_every_subclass_pins_a_kind(self):
        subclasses = [
            obj
            for obj in vars(error_module).values()
            if isinstance(obj, type) and issubclass(obj, ServiceError) and obj is not ServiceError
        ]
        kinds = {cls.kind for cls in subclasses}
        assert kinds == set(ErrorKind)

    async def test_timeout_is_a_503_server_error(self):
        import time

        with pytest.raises(DependencyTimeoutError) as exc_info:
            await run_bounded(time.sleep, 0.5, timeout=0.01)
        assert exc_info.value.status_code == 503
        assert exc_info.value.error_code == "server_error"


class TestErrorBody:
    def test_known_codes_accepted(self):
        for kind in ErrorKind:
            assert ErrorBody(code=kind.value, message="x").code == kind.value

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorResponse:
    def test_response_shape(self):
        response = _error_response(404, "missing", {"id": "x"}, code="user_not_found")
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "user_not_found", "message": "missing", "details": {"id": "x"}}
        assert body["request_id"]

    def test_generic_code_for_status(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(418) == "server_error"
