"""
tests/test_admin_routes.py -- Integration tests for the permission-gated admin surface.

Covers:
  - 403 for an authenticated user without the permission
  - Security config read / update / validation, CONFIG_CHANGE audit, live re-apply
  - Audit log listing and filtering
  - Fail-closed gate: permission resolution failure -> 503, never 200
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from auth.errors import StoreUnavailable
from conftest import ADMIN, ALICE, auth_headers, login

CONFIG_URL = "/api/v1/admin/security-config"
AUDIT_URL = "/api/v1/admin/audit-logs"


@pytest.fixture
def admin_headers(api_client: tuple[TestClient, dict]) -> dict[str, str]:
    client, _ = api_client
    return auth_headers(login(client, *ADMIN).json()["access_token"])


def test_user_without_permission_is_forbidden(api_client: tuple[TestClient, dict]) -> None:
    client, _ = api_client
    headers = auth_headers(login(client, *ALICE).json()["access_token"])
    for path in (CONFIG_URL, AUDIT_URL):
        resp = client.get(path, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "insufficient_permissions"


def test_read_security_config(api_client: tuple[TestClient, dict], admin_headers: dict) -> None:
    client, _ = api_client
    resp = client.get(CONFIG_URL, headers=admin_headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["values"]["MAX_FAILED_ATTEMPTS"] == 5
    assert data["values"]["ACCESS_TOKEN_TTL_MINUTES"] == 15
    assert data["rotate_refresh_tokens"] is True


def test_update_security_config(api_client: tuple[TestClient, dict], admin_headers: dict) -> None:
    client, ids = api_client
    resp = client.patch(CONFIG_URL, json={"key": "MAX_FAILED_ATTEMPTS", "value": 3}, headers=admin_headers)
    assert resp.status_code == 200, resp.text
    assert resp.json()["values"]["MAX_FAILED_ATTEMPTS"] == 3
    assert client.app.state.gateway.config.max_failed_attempts == 3

    events = client.get(AUDIT_URL, params={"event_type": "CONFIG_CHANGE"}, headers=admin_headers).json()
    assert events[0]["user_id"] == ids["testadmin"]
    assert events[0]["old_values"] == {"MAX_FAILED_ATTEMPTS": 5}
    assert events[0]["new_values"] == {"MAX_FAILED_ATTEMPTS": 3}

    # Restore for the rest of the module.
    client.patch(CONFIG_URL, json={"key": "MAX_FAILED_ATTEMPTS", "value": 5}, headers=admin_headers)
    assert client.app.state.gateway.config.max_failed_attempts == 5


@pytest.mark.parametrize(
    "body",
    [
        {"key": "MAX_FAILED_ATTEMPTS", "value": 0},
        {"key": "ACCESS_TOKEN_TTL_MINUTES", "value": 61},
        {"key": "NOT_A_KEY", "value": 1},
    ],
)
def test_invalid_config_rejected(api_client: tuple[TestClient, dict], admin_headers: dict, body: dict) -> None:
    client, _ = api_client
    resp = client.patch(CONFIG_URL, json=body, headers=admin_headers)
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "invalid_config"


def test_audit_logs_filtered(api_client: tuple[TestClient, dict], admin_headers: dict) -> None:
    client, ids = api_client
    login(client, "alice", "wrong-password")
    resp = client.get(
        AUDIT_URL, params={"user_id": ids["alice"], "event_type": "LOGIN_FAILURE", "limit": 5}, headers=admin_headers
    )
    assert resp.status_code == 200
    events = resp.json()
    assert 1 <= len(events) <= 5
    assert all(e["event_type"] == "LOGIN_FAILURE" and e["user_id"] == ids["alice"] for e in events)


def test_unknown_event_type_is_a_validation_error(api_client: tuple[TestClient, dict], admin_headers: dict) -> None:
    client, _ = api_client
    resp = client.get(AUDIT_URL, params={"event_type": "NOPE"}, headers=admin_headers)
    assert resp.status_code == 422


def test_permission_store_failure_fails_closed(
    api_client: tuple[TestClient, dict], admin_headers: dict, monkeypatch
) -> None:
    client, _ = api_client

    def broken(user_id: str):
        raise StoreUnavailable()

    monkeypatch.setattr(client.app.state.user_store, "get_permissions", broken)
    resp = client.get(CONFIG_URL, headers=admin_headers)
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"
