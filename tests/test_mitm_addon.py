import json

import pytest

pytest.importorskip("mitmproxy")

from mitmproxy import http  # noqa: E402

from tokenwire import mitm_addon  # noqa: E402
from tokenwire.events import RequestObserved  # noqa: E402


def make_request(headers, url="https://api.example.com/v1/me"):
    return http.Request.make("GET", url, headers=headers)


def test_context_from_tag_header():
    req = make_request({"x-tokenwire-context": "tab-9"})
    assert mitm_addon.context_id_for(req, ("10.0.0.2", 51000), "x-tokenwire-context") == "tab-9"


def test_context_falls_back_to_client_address():
    req = make_request({})
    assert mitm_addon.context_id_for(req, ("10.0.0.2", 51000), "x-tokenwire-context") == "10.0.0.2"
    assert mitm_addon.context_id_for(req, None, "x-tokenwire-context") == "default"


def test_request_event_excludes_context_tag():
    req = make_request({"Authorization": "Bearer abc123xyz789", "x-tokenwire-context": "tab-9"})
    data = mitm_addon.build_request_event(req, "tab-9", "x-tokenwire-context")
    event = RequestObserved.model_validate(data)
    assert event.context_id == "tab-9"
    assert event.url == "https://api.example.com/v1/me"
    assert [(h.name, h.value) for h in event.headers] == [("Authorization", "Bearer abc123xyz789")]


def test_static_assets_filtered():
    assert mitm_addon.should_filter("https://cdn.example.com/app.CSS")
    assert mitm_addon.should_filter("https://cdn.example.com/logo.png?v=2")
    assert not mitm_addon.should_filter("https://api.example.com/v1/me")


def test_load_config_defaults_when_missing(tmp_path):
    cfg = mitm_addon.load_config(tmp_path / "missing.json")
    assert cfg["backend_url"] == mitm_addon.DEFAULT_BACKEND_URL
    assert cfg["context_header"] == mitm_addon.DEFAULT_CONTEXT_HEADER


def test_load_config_reads_file(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"backend_url": "http://127.0.0.1:5999", "context_header": "x-ctx"}))
    assert mitm_addon.load_config(path)["backend_url"] == "http://127.0.0.1:5999"


def test_load_config_ignores_garbage(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text("{not json")
    assert mitm_addon.load_config(path)["backend_url"] == mitm_addon.DEFAULT_BACKEND_URL
