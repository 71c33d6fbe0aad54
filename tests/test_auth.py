"""Tests for HTTP Basic Auth middleware."""

import base64

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from pillsync.main import BasicAuthMiddleware


def _basic(credentials: bytes) -> dict[str, str]:
    return {"Authorization": f"Basic {base64.b64encode(credentials).decode('utf-8')}"}


@pytest.fixture
def auth_client() -> TestClient:
    """Small app behind the middleware with auth enabled."""
    app = FastAPI()
    app.add_middleware(BasicAuthMiddleware, username="admin", password="secret")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/devices/D1")
    def device() -> dict[str, str]:
        return {"id": "D1"}

    @app.post("/tasks/check-missed-dose")
    def task() -> dict[str, str]:
        return {"status": "already_taken"}

    return TestClient(app)


def test_no_auth_when_password_not_set(client: TestClient):
    """Requests pass through when auth_password is None (disabled)."""
    resp = client.get("/api/patients/p1/adherence")
    assert resp.status_code == 200


def test_auth_required_when_password_set(auth_client: TestClient):
    """401 returned when credentials missing and auth enabled."""
    resp = auth_client.get("/api/devices/D1")
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == 'Basic realm="PillSync"'


def test_wrong_credentials(auth_client: TestClient):
    assert auth_client.get("/api/devices/D1", headers=_basic(b"wronguser:secret")).status_code == 401
    assert auth_client.get("/api/devices/D1", headers=_basic(b"admin:wrongpass")).status_code == 401


def test_correct_credentials(auth_client: TestClient):
    resp = auth_client.get("/api/devices/D1", headers=_basic(b"admin:secret"))
    assert resp.status_code == 200
    assert resp.json() == {"id": "D1"}


def test_malformed_auth_header(auth_client: TestClient):
    """401 returned for malformed Authorization header."""
    # Missing "Basic " prefix
    assert auth_client.get("/api/devices/D1", headers={"Authorization": "invalid"}).status_code == 401

    # Invalid base64
    assert auth_client.get("/api/devices/D1", headers={"Authorization": "Basic !!!"}).status_code == 401

    # Valid base64 but no colon separator
    assert auth_client.get("/api/devices/D1", headers=_basic(b"adminnocolon")).status_code == 401


def test_health_with_auth_enabled(auth_client: TestClient):
    """/health is exempt even when auth is enabled."""
    resp = auth_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_task_callbacks_exempt(auth_client: TestClient):
    """Task callbacks carry their own secret instead of Basic auth."""
    assert auth_client.post("/tasks/check-missed-dose").status_code == 200


def test_non_ascii_credentials(auth_client: TestClient):
    resp = auth_client.get("/api/devices/D1", headers=_basic("admin:sécret".encode("utf-8")))
    assert resp.status_code == 401
