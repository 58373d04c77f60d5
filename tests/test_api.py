"""Integration tests for the HTTP surface.

Tests the token and session endpoints end to end against the in-memory
runtime:
- Refresh token rotation and replay rejection
- Session listing and remote sign-out
- Logout on one device or all of them
- Health reporting
"""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient

from sessionguard import app as app_module
from sessionguard.service import runtime as runtime_module
from sessionguard.service.runtime import get_runtime
from sessionguard.storage.models import RequestContext


@pytest.fixture
def client():
    """Create a test client with the app lifespan running."""
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def user_id():
    return f"user-{uuid.uuid4()}"


def _login(user_id):
    runtime = get_runtime()
    return asyncio.run(
        runtime.tokens.create_refresh_token(
            user_id, RequestContext(user_agent="pytest-agent", ip="127.0.0.1")
        )
    )


def _bearer(issued):
    return {"Authorization": f"Bearer {issued.access_token}"}


class TestRefreshEndpoint:
    def test_refresh_rotates_tokens(self, client, user_id):
        issued = _login(user_id)

        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": issued.refresh_secret, "session_id": issued.session_id},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["session_id"] == issued.session_id
        assert data["refresh_token"] != issued.refresh_secret
        assert data["token_type"] == "bearer"
        assert data["access_token"]

    def test_replayed_refresh_token_is_revoked(self, client, user_id):
        """Test that presenting a rotated token again is refused."""
        issued = _login(user_id)
        payload = {"refresh_token": issued.refresh_secret, "session_id": issued.session_id}
        assert client.post("/v1/auth/refresh", json=payload).status_code == 200

        response = client.post("/v1/auth/refresh", json=payload)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_revoked"

    def test_unknown_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "ab" * 64})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_missing_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"


class TestSessionEndpoints:
    def test_list_sessions_marks_current(self, client, user_id):
        current = _login(user_id)
        other = _login(user_id)

        response = client.get("/v1/sessions", headers=_bearer(current))

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert {item["id"] for item in items} == {current.session_id, other.session_id}
        flags = {item["id"]: item["is_current"] for item in items}
        assert flags[current.session_id] is True
        assert flags[other.session_id] is False

    def test_missing_bearer(self, client):
        response = client.get("/v1/sessions")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_revoke_other_session(self, client, user_id):
        current = _login(user_id)
        other = _login(user_id)

        response = client.delete(f"/v1/sessions/{other.session_id}", headers=_bearer(current))

        assert response.status_code == 200
        refresh = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": other.refresh_secret, "session_id": other.session_id},
        )
        assert refresh.status_code == 401
        assert refresh.json()["error"]["code"] == "token_revoked"

    def test_cannot_revoke_someone_elses_session(self, client, user_id):
        mine = _login(user_id)
        theirs = _login(f"user-{uuid.uuid4()}")

        response = client.delete(f"/v1/sessions/{theirs.session_id}", headers=_bearer(mine))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert get_runtime().sessions.get_session(theirs.session_id).is_active


class TestLogoutEndpoint:
    def test_logout_revokes_access_token(self, client, user_id):
        issued = _login(user_id)

        response = client.post("/v1/auth/logout", headers=_bearer(issued))

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        again = client.get("/v1/sessions", headers=_bearer(issued))
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "token_revoked"

    def test_logout_all_devices(self, client, user_id):
        logins = [_login(user_id) for _ in range(3)]

        response = client.post(
            "/v1/auth/logout", json={"all_devices": True}, headers=_bearer(logins[0])
        )

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 3
        assert get_runtime().sessions.get_user_sessions(user_id) == []


class TestOps:
    def test_healthz(self, client):
        response = client.get("/v1/healthz")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["store"] == "memory"
        assert data["cache"] is False
        assert data["cleanup"]["scheduler_running"] is False

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["API-Version"] == app_module.__version__


class TestLifespan:
    def test_shutdown_discards_closed_runtime(self):
        with TestClient(app_module.app):
            started = get_runtime()

        assert runtime_module.runtime is None
        assert get_runtime() is not started
