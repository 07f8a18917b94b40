"""Tests for the FastAPI command surface."""

import json
import os
import time

import pytest
from fastapi.testclient import TestClient

from kiro_accounts.api.main import create_app

from conftest import FACTORY_MACHINE_ID, callback_url, make_account

BIND_ID = "ffffffff-1111-4222-8333-444444444444"


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as c:
        yield c


def _create(client, **overrides):
    body = {
        "provider": "social",
        "email": "api@example.com",
        "credentials": {
            "access_token": "secret-access-token",
            "refresh_token": "secret-refresh-token",
            "expires_at": int(time.time()) + 3600,
        },
    }
    body.update(overrides)
    resp = client.post("/api/accounts", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def test_create_and_list_never_exposes_tokens(client):
    created = _create(client)
    assert created["token_fingerprint"].endswith("-token")
    assert created["is_expired"] is False

    resp = client.get("/api/accounts")
    assert resp.status_code == 200
    assert [a["id"] for a in resp.json()] == [created["id"]]
    assert "secret-access-token" not in resp.text
    assert "secret-refresh-token" not in resp.text


def test_get_unknown_account(client):
    resp = client.get("/api/accounts/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


def test_patch_account(client):
    created = _create(client)
    resp = client.patch(f"/api/accounts/{created['id']}", json={"display_name": "Work"})
    assert resp.status_code == 200
    assert resp.json()["display_name"] == "Work"


def test_patch_nothing_is_rejected(client):
    created = _create(client)
    resp = client.patch(f"/api/accounts/{created['id']}", json={})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


def test_create_active_without_token_is_rejected(client):
    resp = client.post(
        "/api/accounts",
        json={"provider": "social", "credentials": {"access_token": ""}},
    )
    assert resp.status_code == 400


def test_delete_one_and_many(client):
    ids = [_create(client, email=f"u{i}@example.com")["id"] for i in range(3)]
    assert client.delete(f"/api/accounts/{ids[0]}").json() == {"deleted": ids[0]}
    assert client.post("/api/accounts/delete", json={"ids": ids[1:]}).json() == {"deleted": 2}
    assert client.get("/api/accounts").json() == []


def test_refresh_verify_sync(client):
    created = _create(client)
    account_id = created["id"]
    refreshed = client.post(f"/api/accounts/{account_id}/refresh", params={"force": True}).json()
    assert refreshed["token_fingerprint"] != created["token_fingerprint"]

    verified = client.post(f"/api/accounts/{account_id}/verify").json()
    assert verified["status"] == "active"
    assert verified["last_verified_at"] is not None

    synced = client.post(f"/api/accounts/{account_id}/sync").json()
    assert synced["subscription_type"] == "KIRO FREE"


def test_export_and_import(client):
    created = _create(client)
    doc = client.post("/api/accounts/export", json={"redact": True}).json()
    assert doc["redacted"] is True
    assert doc["accounts"][0]["credentials"]["access_token"] is None

    client.delete(f"/api/accounts/{created['id']}")
    report = client.post("/api/accounts/import", json={"document": doc}).json()
    assert report["imported"] == [created["id"]]
    assert client.get(f"/api/accounts/{created['id']}").json()["status"] == "invalid"


def test_switch_account(client, services):
    created = _create(client)
    resp = client.post(f"/api/accounts/{created['id']}/switch")
    assert resp.status_code == 200
    doc = json.loads(services.settings.ide_token_path.read_text())
    assert doc["accessToken"] == "secret-access-token"

    current = client.get("/api/auth/current").json()
    assert current["account"]["id"] == created["id"]
    assert client.post("/api/auth/logout").json()["token_removed"] is True


# ---------------------------------------------------------------------------
# Login handshake
# ---------------------------------------------------------------------------


def test_providers_list(client):
    assert "BuilderId" in client.get("/api/auth/providers").json()["providers"]


def test_social_login_roundtrip(client):
    resp = client.post("/api/auth/login", json={"provider": "Google", "bind_machine": True})
    assert resp.status_code == 200
    pending = resp.json()["pending"]
    assert pending["status"] == "pending"
    shown = client.get("/api/auth/pending")
    assert shown.json()["correlation_fingerprint"] == pending["correlation_fingerprint"]
    assert pending["correlation_token"] not in shown.text

    resp = client.post("/api/auth/complete", json={"url": callback_url(pending["correlation_token"])})
    assert resp.status_code == 200
    account = resp.json()
    assert account["bound_machine_id"] == FACTORY_MACHINE_ID

    assert [a["id"] for a in client.get("/api/accounts").json()] == [account["id"]]
    assert client.get("/api/auth/pending").json() == {"status": "none"}


def test_second_login_conflicts_until_cancelled(client):
    client.post("/api/auth/login", json={"provider": "Google"})
    resp = client.post("/api/auth/login", json={"provider": "Github"})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "ALREADY_PENDING"

    assert client.post("/api/auth/cancel").json() == {"cancelled": True}
    assert client.post("/api/auth/login", json={"provider": "Github"}).status_code == 200


def test_complete_with_wrong_state(client):
    client.post("/api/auth/login", json={"provider": "Google"})
    resp = client.post("/api/auth/complete", json={"url": callback_url("forged")})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "CORRELATION_MISMATCH"


def test_complete_requires_target(client):
    resp = client.post("/api/auth/complete", json={})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "PARSE_ERROR"


def test_import_login_completes_immediately(client):
    resp = client.post(
        "/api/auth/login",
        json={"provider": "Import", "token": {"accessToken": "x", "expiresAt": 0}},
    )
    assert resp.status_code == 200
    assert resp.json()["account"]["provider"] == "direct_import"
    assert client.get("/api/auth/pending").json() == {"status": "none"}


def test_unknown_provider(client):
    resp = client.post("/api/auth/login", json={"provider": "myspace"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "INVALID_FORMAT"


def test_relaunch_delivers_callback(client):
    pending = client.post("/api/auth/login", json={"provider": "Github"}).json()["pending"]
    argv = ["kiro-accounts", "open-url", "--", callback_url(pending["correlation_token"])]
    resp = client.post("/api/instance/relaunch", json={"argv": argv})
    assert resp.status_code == 200
    assert resp.json()["handled"] is True


def test_relaunch_without_url(client):
    resp = client.post("/api/instance/relaunch", json={"argv": ["kiro-accounts"]})
    assert resp.json() == {"handled": False, "account": None}


# ---------------------------------------------------------------------------
# Machine id
# ---------------------------------------------------------------------------


def test_machine_id_read_and_custom(client):
    assert client.get("/api/machine-id").json()["current_id"] == FACTORY_MACHINE_ID
    resp = client.post("/api/machine-id/custom", json={"machine_id": BIND_ID.upper()})
    assert resp.json() == {"machine_id": BIND_ID}
    resp = client.post("/api/machine-id/custom", json={"machine_id": "bad"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "INVALID_FORMAT"


def test_machine_id_backup_restore(client):
    assert client.get("/api/machine-id/backup").status_code == 404
    client.post("/api/machine-id/backup")
    client.post("/api/machine-id/reset")
    assert client.get("/api/machine-id").json()["current_id"] != FACTORY_MACHINE_ID
    assert client.post("/api/machine-id/restore", json={}).json() == {"machine_id": FACTORY_MACHINE_ID}


def test_machine_id_bindings(client, services):
    services.store.add(make_account("a1"))
    services.store.add(make_account("a2", access_token="t2"))
    resp = client.post("/api/machine-id/bindings", json={"account_id": "a1", "machine_id": BIND_ID})
    assert resp.json()["changed"] is True
    resp = client.post("/api/machine-id/bindings", json={"account_id": "a2", "machine_id": BIND_ID})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "GUID_CONFLICT"
    assert client.get("/api/machine-id/bindings").json() == {"bindings": {"a1": BIND_ID}}
    assert client.delete("/api/machine-id/bindings/a1").json()["released"] == BIND_ID


def test_instance_ping(client):
    assert client.get("/api/instance/ping").json()["pid"] == os.getpid()
