"""HTTP surface tests against a real app instance (lifespan included)."""

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tokenwire.config import AppConfig
from tokenwire.main import create_app


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        settings_path=tmp_path / "settings.json",
        mirror_path=tmp_path / "mirror.db",
        proxy_config_path=tmp_path / ".proxy_config.json",
        auto_adopt_context=False,
    )


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as c:
        yield c


def request_event(token, context_id="tab-1", url="https://api.example.com/me"):
    return {
        "type": "request_observed",
        "context_id": context_id,
        "url": url,
        "headers": [{"name": "Authorization", "value": f"Bearer {token}"}],
    }


def wait_for_size(client, size, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get("/api/collection").json()
        if body["size"] == size:
            return body
        time.sleep(0.01)
    raise AssertionError(f"collection never reached size {size}: {body}")


def activate(client, context_id="tab-1", url="https://app.example.com/"):
    r = client.post("/api/internal/context", json={"context_id": context_id, "url": url})
    assert r.status_code == 200
    return r.json()


# ── collection ──

def test_empty_collection(client):
    body = client.get("/api/collection").json()
    assert body == {"entries": [], "size": 0, "capacity": 5}


def test_observed_request_listed_masked(client):
    assert activate(client)["active_context"] == "tab-1"
    r = client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    assert r.json() == {"status": "queued"}

    body = wait_for_size(client, 1)
    [item] = body["entries"]
    assert item["masked_token"].startswith("abc1")
    assert item["masked_token"].endswith("cret")
    assert "abc123xyz789secret" not in item.values()
    assert item["source"] == "https://api.example.com/me"


def test_copy_returns_raw_token(client):
    activate(client)
    client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    handle = wait_for_size(client, 1)["entries"][0]["handle"]

    r = client.post(f"/api/tokens/{handle}/copy")
    assert r.status_code == 200
    assert r.json() == {"token": "abc123xyz789secret"}


def test_copy_unknown_handle(client):
    assert client.post("/api/tokens/deadbeef/copy").status_code == 404


def test_request_from_inactive_context_ignored(client):
    activate(client, "tab-1")
    client.post("/api/internal/request", json=request_event("from-other-tab-123", context_id="tab-2"))
    client.post("/api/internal/request", json=request_event("from-this-tab-1234"))
    body = wait_for_size(client, 1)
    assert body["entries"][0]["masked_token"].startswith("from")
    assert body["entries"][0]["masked_token"].endswith("1234")


def test_context_switch_resets(client):
    activate(client, "tab-1")
    client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    wait_for_size(client, 1)

    body = activate(client, "tab-2")
    assert body["reset"] is True
    assert client.get("/api/collection").json()["size"] == 0


def test_reload_of_active_context_resets(client):
    activate(client, "tab-1")
    client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    wait_for_size(client, 1)

    r = client.post("/api/internal/context", json={"context_id": "tab-1", "reason": "loading"})
    assert r.json()["reset"] is True
    assert client.get("/api/collection").json()["size"] == 0


def test_clear(client):
    activate(client)
    client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    wait_for_size(client, 1)

    assert client.post("/api/collection/clear").json() == {"success": True}
    assert client.get("/api/collection").json()["size"] == 0


# ── scans ──

def test_scan_without_context_fails_softly(client, config):
    client.put("/api/policy", json={"detection_source": "storage"})
    body = client.post("/api/collection/scan").json()
    assert body["status"] == "scan_failed"
    assert body["size"] == 0


def test_storage_scan(client):
    client.put("/api/policy", json={"detection_source": "storage"})
    activate(client)
    client.post("/api/internal/storage", json={
        "context_id": "tab-1",
        "origin": "https://app.example.com",
        "items": [
            {"key": "access_token", "value": "eyJhbGciOiJIUzI1NiJ9.payload"},
            {"key": "theme", "value": "dark-mode-enabled"},
        ],
    })
    body = client.post("/api/collection/scan").json()
    assert body["status"] == "ok"
    assert [e["source"] for e in body["entries"]] == ["localStorage:access_token"]


def test_header_scan_returns_collection(client):
    body = client.post("/api/collection/scan").json()
    assert body["status"] == "ok"
    assert body["size"] == 0


# ── policy ──

def test_get_default_policy(client):
    assert client.get("/api/policy").json() == {
        "detection_kind": "bearer",
        "header_name": "",
        "detection_source": "headers",
        "max_entries": 5,
        "auto_cleanup": True,
    }


def test_invalid_policy_rejected(client):
    r = client.put("/api/policy", json={"max_entries": 9})
    assert r.status_code == 400
    detail = r.json()["detail"]
    assert detail["errors"][0]["field"] == "max_entries"
    assert client.get("/api/policy").json()["max_entries"] == 5


def test_custom_policy_requires_header_name(client):
    r = client.put("/api/policy", json={"detection_kind": "custom"})
    assert r.status_code == 400


def test_policy_change_resets_and_persists(client, config):
    activate(client)
    client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    wait_for_size(client, 1)

    r = client.put("/api/policy", json={"detection_kind": "custom", "header_name": " X-Api-Key ", "max_entries": 2})
    assert r.status_code == 200
    assert r.json()["header_name"] == "X-Api-Key"
    body = client.get("/api/collection").json()
    assert body["size"] == 0
    assert body["capacity"] == 2
    assert config.settings_path.exists()


def test_saved_policy_loaded_on_startup(config):
    with TestClient(create_app(config)) as c:
        c.put("/api/policy", json={"detection_kind": "session", "max_entries": 3})
    with TestClient(create_app(config)) as c:
        assert c.get("/api/policy").json()["detection_kind"] == "session"
        assert c.get("/api/collection").json()["capacity"] == 3


# ── lifecycle ──

def test_shutdown_with_remaining_contexts_keeps_data(client):
    activate(client)
    client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    wait_for_size(client, 1)

    assert client.post("/api/internal/shutdown", json={"remaining_contexts": 2}).json()["wiped"] is False
    assert client.get("/api/collection").json()["size"] == 1


def test_last_shutdown_wipes(client, config):
    activate(client)
    client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    wait_for_size(client, 1)

    assert client.post("/api/internal/shutdown", json={}).json()["wiped"] is True
    assert client.get("/api/collection").json()["size"] == 0
    assert not config.mirror_path.exists()


def test_proxy_status_not_running(client):
    body = client.get("/api/proxy/status").json()
    assert body["running"] is False


# ── origins ──

def test_foreign_origin_cannot_read_collection(client):
    r = client.get("/api/collection", headers={"Origin": "https://evil.example"})
    assert r.status_code == 403
    assert "access-control-allow-origin" not in r.headers


def test_foreign_origin_cannot_copy(client):
    activate(client)
    client.post("/api/internal/request", json=request_event("abc123xyz789secret"))
    handle = wait_for_size(client, 1)["entries"][0]["handle"]

    r = client.post(f"/api/tokens/{handle}/copy", headers={"Origin": "https://evil.example"})
    assert r.status_code == 403
    assert "access-control-allow-origin" not in r.headers
    assert "abc123xyz789secret" not in r.text


def test_foreign_origin_cannot_change_policy(client):
    r = client.put("/api/policy", json={"max_entries": 1}, headers={"Origin": "https://evil.example"})
    assert r.status_code == 403
    assert client.get("/api/policy").json()["max_entries"] == 5


def test_foreign_origin_websocket_rejected(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws", headers={"Origin": "https://evil.example"}):
            pass


def test_configured_origin_allowed(config):
    config.allowed_origins = ["http://localhost:3000"]
    with TestClient(create_app(config)) as c:
        r = c.get("/api/collection", headers={"Origin": "http://localhost:3000"})
        assert r.status_code == 200
        assert r.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert c.get("/api/collection", headers={"Origin": "https://evil.example"}).status_code == 403


def test_storage_push_for_inactive_context_ignored(client):
    activate(client, "tab-1")
    r = client.post("/api/internal/storage", json={"context_id": "tab-2", "items": []})
    assert r.json()["status"] == "ignored"
