import json

import pytest
import requests

from app import config
from app.config import (DEFAULT_STUN_URLS, build_ice_servers, fetch_ice_config, get_initial_ice_config,
                        get_session_settings)

ENV_VARS = [
    "ICE_CONFIG_PATH", "TURN_URLS", "USE_TURN", "TURN_USERNAME", "TURN_CREDENTIAL", "ICE_RELAY_ONLY",
    "RELAY_URL", "RELAY_HTTP_URL", "INITIATOR_POLICY", "LINK_MAX_RETRIES", "RELAY_RECONNECT_DELAY",
    "RELAY_MAX_RECONNECT_DELAY", "MEDIA_BACKEND", "CAMERA_WIDTH", "CAMERA_HEIGHT", "CAMERA_FPS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_ice_defaults_to_public_stun():
    config = get_initial_ice_config()

    assert config["urls"] == DEFAULT_STUN_URLS
    assert config["use_turn"] is False
    assert config["relay_only"] is False


def test_ice_env_overrides(monkeypatch):
    monkeypatch.setenv("TURN_URLS", "turn:turn.example.com:3478, stun:stun.example.com:3478 ,")
    monkeypatch.setenv("USE_TURN", "yes")
    monkeypatch.setenv("TURN_USERNAME", "user")
    monkeypatch.setenv("TURN_CREDENTIAL", "")

    config = get_initial_ice_config()

    assert config["urls"] == ["turn:turn.example.com:3478", "stun:stun.example.com:3478"]
    assert config["use_turn"] is True
    assert config["username"] == "user"
    assert config["credential"] is None


def test_ice_file_then_env(monkeypatch, tmp_path):
    path = tmp_path / "ice.json"
    path.write_text(json.dumps({"urls": ["turns:relay.example.com:5349"], "use_turn": True, "username": None}))
    monkeypatch.setenv("ICE_CONFIG_PATH", str(path))
    monkeypatch.setenv("ICE_RELAY_ONLY", "1")

    config = get_initial_ice_config()

    assert config["urls"] == ["turns:relay.example.com:5349"]
    assert config["use_turn"] is True
    assert config["username"] is None
    assert config["relay_only"] is True


def test_ice_missing_file_falls_back(monkeypatch, tmp_path):
    monkeypatch.setenv("ICE_CONFIG_PATH", str(tmp_path / "missing.json"))

    assert get_initial_ice_config()["urls"] == DEFAULT_STUN_URLS


def test_build_ice_servers_splits_stun_and_turn():
    servers = build_ice_servers({
        "use_turn": True,
        "urls": ["stun:s.example.com", "turn:t.example.com"],
        "username": "u",
        "credential": "p",
    })

    assert [s.urls for s in servers] == [["stun:s.example.com"], ["turn:t.example.com"]]
    assert servers[1].username == "u"
    assert servers[1].credential == "p"


def test_build_ice_servers_skips_turn_when_disabled():
    servers = build_ice_servers({"use_turn": False, "urls": ["stun:s.example.com", "turn:t.example.com"]})

    assert [s.urls for s in servers] == [["stun:s.example.com"]]


def test_build_ice_servers_relay_only():
    servers = build_ice_servers({"use_turn": True, "relay_only": True,
                                 "urls": ["stun:s.example.com", "turns:t.example.com"]})

    assert [s.urls for s in servers] == [["turns:t.example.com"]]
    assert build_ice_servers({"relay_only": True, "urls": ["stun:s.example.com"]}) == []


def test_session_settings_defaults():
    settings = get_session_settings()

    assert settings["relay_url"] == "ws://localhost:8105"
    assert settings["initiator_policy"] == "newcomer"
    assert settings["max_link_retries"] == 1
    assert settings["media_backend"] == "device"
    assert settings["camera"] == {"width": 640, "height": 480, "fps": 30}


def test_session_settings_from_env(monkeypatch):
    monkeypatch.setenv("INITIATOR_POLICY", "lower_id")
    monkeypatch.setenv("LINK_MAX_RETRIES", "3")
    monkeypatch.setenv("RELAY_RECONNECT_DELAY", "0.5")
    monkeypatch.setenv("MEDIA_BACKEND", "synthetic")
    monkeypatch.setenv("CAMERA_WIDTH", "1280")

    settings = get_session_settings()

    assert settings["initiator_policy"] == "lower_id"
    assert settings["max_link_retries"] == 3
    assert settings["relay_reconnect_delay"] == 0.5
    assert settings["media_backend"] == "synthetic"
    assert settings["camera"]["width"] == 1280


def test_session_settings_reject_bad_values(monkeypatch):
    monkeypatch.setenv("INITIATOR_POLICY", "loudest")
    monkeypatch.setenv("LINK_MAX_RETRIES", "many")
    monkeypatch.setenv("MEDIA_BACKEND", "webcam")

    settings = get_session_settings()

    assert settings["initiator_policy"] == "newcomer"
    assert settings["max_link_retries"] == 1
    assert settings["media_backend"] == "device"


def test_session_settings_derive_relay_http_url(monkeypatch):
    assert get_session_settings()["relay_http_url"] == "http://localhost:8105"

    monkeypatch.setenv("RELAY_URL", "wss://relay.example.com")
    assert get_session_settings()["relay_http_url"] == "https://relay.example.com"

    monkeypatch.setenv("RELAY_HTTP_URL", "http://10.0.0.5:8105")
    assert get_session_settings()["relay_http_url"] == "http://10.0.0.5:8105"


class FakeResponse:
    def __init__(self, data, status_code=200):
        self.data = data
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if isinstance(self.data, Exception):
            raise self.data
        return self.data


def serve(monkeypatch, result):
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(config.requests, "get", fake_get)
    return calls


def test_fetch_ice_config(monkeypatch):
    published = {"urls": ["stun:s.example.com"], "use_turn": False}
    calls = serve(monkeypatch, FakeResponse(published))

    assert fetch_ice_config("http://relay.local:8105/") == published
    assert calls == ["http://relay.local:8105/ice_config"]


@pytest.mark.parametrize("result", [
    FakeResponse({}, status_code=503),
    requests.ConnectionError("connection refused"),
    FakeResponse(ValueError("not json")),
    FakeResponse(["stun:s.example.com"]),
])
def test_fetch_ice_config_unavailable(monkeypatch, result):
    serve(monkeypatch, result)

    assert fetch_ice_config("http://relay.local:8105") is None
