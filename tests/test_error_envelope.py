"""Error envelope shape and exception-to-status mapping."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from tasktrack.api.error_handling import (
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from tasktrack.api.schemas import ErrorBody
from tasktrack.logging import correlation_id_var, set_correlation_id
from tasktrack.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidInputError,
    InvalidTokenError,
    MissingTokenError,
    ServerError,
    TokenAlreadyRotatedError,
    UserExistsError,
)
from tasktrack.storage.errors import ConstraintViolation


class TestErrorBody:
    @pytest.mark.parametrize(
        "code",
        ["invalid_credentials", "account_locked", "missing_token", "invalid_token", "token_already_rotated"],
    )
    def test_session_codes_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="m")

    def test_status_fallbacks(self):
        assert _error_code_for_status(423) == "account_locked"
        assert _error_code_for_status(422) == "validation_error"
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    def test_echoes_correlation_id(self):
        token = correlation_id_var.set(None)
        try:
            request_id = set_correlation_id("req-123")
            response = _error_response(401, "nope", code="invalid_token")
        finally:
            correlation_id_var.reset(token)

        body = json.loads(response.body)
        assert request_id == "req-123"
        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["request_id"] == "req-123"
        assert body["error"] == {"code": "invalid_token", "message": "nope", "details": None}

    def test_generates_request_id_without_correlation(self):
        token = correlation_id_var.set(None)
        try:
            body = json.loads(_error_response(500, "boom").body)
        finally:
            correlation_id_var.reset(token)

        assert body["request_id"]
        assert body["error"]["code"] == "server_error"


class _Payload(BaseModel):
    name: str


def _app():
    app = FastAPI()
    register_exception_handlers(app)
    errors = {
        "input": InvalidInputError("bad input"),
        "credentials": InvalidCredentialsError("invalid email or password"),
        "inactive": AccountInactiveError("account is deactivated"),
        "missing": MissingTokenError("refresh token is required"),
        "invalid": InvalidTokenError("invalid token", detail={"reason": "expired"}),
        "forbidden": ForbiddenError("signup is disabled"),
        "exists": UserExistsError("taken", detail={"field": "email"}),
        "rotated": TokenAlreadyRotatedError("already rotated"),
        "locked": AccountLockedError("locked", detail={"locked_until": None}),
        "server": ServerError("failed"),
    }

    @app.get("/raise/{name}")
    async def raise_error(name: str):
        raise errors[name]

    @app.get("/constraint")
    async def raise_constraint():
        raise ConstraintViolation("duplicate", {"field": "email"})

    @app.get("/crash")
    async def crash():
        raise RuntimeError("unexpected")

    @app.post("/validate")
    async def validate(payload: _Payload):
        return payload

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "name,status,code",
        [
            ("input", 400, "validation_error"),
            ("credentials", 401, "invalid_credentials"),
            ("inactive", 401, "account_inactive"),
            ("missing", 401, "missing_token"),
            ("invalid", 401, "invalid_token"),
            ("forbidden", 403, "forbidden"),
            ("exists", 409, "conflict"),
            ("rotated", 409, "token_already_rotated"),
            ("locked", 423, "account_locked"),
            ("server", 500, "server_error"),
        ],
    )
    def test_service_errors(self, client, name, status, code):
        response = client.get(f"/raise/{name}")

        assert response.status_code == status
        assert response.json()["error"]["code"] == code

    def test_service_error_details_are_kept(self, client):
        body = client.get("/raise/invalid").json()
        assert body["error"]["details"] == {"reason": "expired"}

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_request_validation_is_400(self, client):
        response = client.post("/validate", json={})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "name"]

    def test_unhandled_exception_hides_message(self, client):
        response = client.get("/crash")

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }

    def test_unknown_route(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_wrong_method_is_enveloped(self, client):
        response = client.post("/constraint")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "method_not_allowed"
        assert "GET" in response.headers["allow"]
