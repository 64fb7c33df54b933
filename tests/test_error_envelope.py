"""Tests for the error envelope and exception-to-status mapping.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from campusauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from campusauth.api.schemas import Envelope, ErrorBody
from campusauth.service.errors import (
    AuthenticationError,
    ConflictError,
    DepartmentNotFoundError,
    DuplicateIdentityError,
    ForbiddenError,
    InternalInconsistencyError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidRoleError,
    NotFoundError,
    ServiceError,
    ValidationError as ServiceValidationError,
)
from campusauth.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_known_codes_accepted(self):
        for code in set(_STATUS_TO_CODE.values()):
            assert ErrorBody(code=code, message="m").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
            (503, "server_error"),
        ],
    )
    def test_status_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_body(self):
        response = _error_response(404, "user not found", {"user_id": "u-1"})
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "user not found",
            "details": {"user_id": "u-1"},
        }

    def test_unauthorized_carries_challenge(self):
        response = _error_response(401, "missing bearer token")

        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestServiceErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentialsError(), 401, "unauthorized"),
            (InvalidRefreshTokenError(), 401, "unauthorized"),
            (ForbiddenError("no"), 403, "forbidden"),
            (InvalidRoleError("bad role"), 400, "validation_error"),
            (DepartmentNotFoundError("d-1"), 400, "validation_error"),
            (NotFoundError("gone"), 404, "not_found"),
            (DuplicateIdentityError("email"), 409, "conflict"),
            (InternalInconsistencyError("half written"), 500, "server_error"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code

    def test_hierarchy(self):
        assert issubclass(InvalidCredentialsError, AuthenticationError)
        assert issubclass(InvalidRefreshTokenError, AuthenticationError)
        assert issubclass(DuplicateIdentityError, ConflictError)
        assert issubclass(InvalidRoleError, ServiceValidationError)

    def test_invalid_credentials_message_is_fixed(self):
        assert InvalidCredentialsError().message == "invalid credentials"


class _Body(BaseModel):
    value: int


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service/{kind}")
    async def raise_service(kind: str):
        errors = {
            "auth": AuthenticationError("missing bearer token"),
            "forbidden": ForbiddenError("insufficient role"),
            "duplicate": DuplicateIdentityError("username"),
            "custom": ServiceError("teapot", status_code=418, error_code="validation_error"),
        }
        raise errors[kind]

    @app.get("/constraint")
    async def raise_constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/boom")
    async def raise_unexpected():
        raise RuntimeError("kaboom")

    @app.post("/validate")
    async def validate(body: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error(self, error_client):
        response = error_client.get("/service/forbidden")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert response.json()["error"]["message"] == "insufficient role"

    def test_service_error_details(self, error_client):
        response = error_client.get("/service/duplicate")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "username"}

    def test_custom_status(self, error_client):
        response = error_client.get("/service/custom")

        assert response.status_code == 418
        assert response.json()["error"]["code"] == "validation_error"

    def test_constraint_violation(self, error_client):
        response = error_client.get("/constraint")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_request_validation(self, error_client):
        response = error_client.post("/validate", json={"value": "not-a-number"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"][-1] == "value"

    def test_unhandled_exception_is_opaque(self, error_client):
        response = error_client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "kaboom" not in response.text
