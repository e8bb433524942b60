"""Error envelope rendering for domain, storage and request failures.

Every failure leaves the API as
{"status": "error", "error": {"code", "message", "details"}, "request_id"}.
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from tenantauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from tenantauth.service.errors import (
    InvalidCredentials,
    PermissionDenied,
    StoreUnavailableError,
    UnknownCategory,
)
from tenantauth.storage.errors import ConstraintViolation, TransientStoreError


@pytest.mark.parametrize(
    "status,code",
    [
        (400, "validation_error"),
        (422, "validation_error"),
        (401, "unauthorized"),
        (403, "forbidden"),
        (409, "conflict"),
        (503, "service_unavailable"),
        (502, "server_error"),
        (418, "server_error"),
    ],
)
def test_status_maps_to_stable_code(status, code):
    assert _error_code_for_status(status) == code


def test_stable_codes():
    assert set(_STATUS_TO_CODE.values()) == {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "service_unavailable",
        "server_error",
    }


def test_error_response_shape():
    response = _error_response(404, "Role not found: ghost", details={"code": "ghost"})

    data = json.loads(response.body.decode())
    assert response.status_code == 404
    assert data["status"] == "error"
    assert data["error"] == {
        "code": "not_found",
        "message": "Role not found: ghost",
        "details": {"code": "ghost"},
    }
    assert data["data"] is None
    assert len(data["request_id"]) == 36


class _Login(BaseModel):
    email: str
    password: str


class TestExceptionHandlers:
    """Domain and storage exceptions render as the error envelope."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/credentials")
        async def credentials():
            raise InvalidCredentials()

        @app.get("/denied")
        async def denied():
            raise PermissionDenied(
                "User does not have permission: courses.delete",
                detail={"permission": "courses.delete"},
            )

        @app.get("/category")
        async def category():
            raise UnknownCategory("NoSuchCategory", ["Reporting", "Course Management"])

        @app.get("/constraint")
        async def constraint():
            raise ConstraintViolation("email already exists", {"field": "email"})

        @app.get("/transient")
        async def transient():
            raise TransientStoreError("connection reset", operation="get_user")

        @app.get("/unavailable")
        async def unavailable():
            raise StoreUnavailableError("storage temporarily unavailable")

        @app.get("/rate-limited")
        async def rate_limited():
            raise HTTPException(
                status_code=429,
                detail={
                    "status": "error",
                    "error": {"code": "rate_limited", "message": "rate limit exceeded"},
                },
            )

        @app.post("/login")
        async def login(body: _Login):
            return {"ok": True}

        @app.get("/boom")
        async def boom():
            raise RuntimeError("SELECT * FROM app_user leaked")

        return TestClient(app, raise_server_exceptions=False)

    def test_invalid_credentials_is_unauthorized(self, client):
        response = client.get("/credentials")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "invalid credentials"

    def test_permission_denied_names_missing_code(self, client):
        response = client.get("/denied")
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "forbidden"
        assert error["details"] == {"permission": "courses.delete"}

    def test_unknown_category_lists_valid_categories(self, client):
        response = client.get("/category")
        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "not_found"
        assert "Reporting" in error["message"]
        assert "Reporting" in error["details"]["valid_categories"]

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["details"] == {"field": "email"}

    @pytest.mark.parametrize("path", ["/transient", "/unavailable"])
    def test_store_outage_is_503(self, client, path):
        response = client.get(path)
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"
        assert "connection reset" not in response.text

    def test_enveloped_http_exception_passes_through(self, client):
        response = client.get("/rate-limited")
        assert response.status_code == 429
        assert response.json()["error"] == {
            "code": "rate_limited",
            "message": "rate limit exceeded",
            "details": None,
        }

    def test_request_validation_is_400_without_input_echo(self, client):
        response = client.post("/login", json={"email": "a@x.com", "password": 12345678})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "password"]
        assert "12345678" not in response.text

    def test_uncaught_exception_hides_internals(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "SELECT" not in response.text
