import json
import logging

import pytest

from app import config

ICE_ENV = ("ICE_CONFIG_PATH", "STUN_URLS", "TURN_URLS", "USE_TURN", "TURN_USERNAME", "TURN_CREDENTIAL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ICE_ENV + ("RELAY_URL", "WAITING_POOL_NAME", "RELAY_SUBSCRIBE_TIMEOUT", "CLIENT_ID", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_use_public_stun():
    ice = config.get_initial_ice_config()

    assert ice["urls"] == list(config.DEFAULT_STUN_URLS)
    assert ice["use_turn"] is False
    assert ice["turn_urls"] == []


def test_environment_overrides_file(monkeypatch, tmp_path):
    path = tmp_path / "ice.json"
    path.write_text(json.dumps({"urls": ["stun:file.example.org"], "use_turn": True, "username": "file"}))
    monkeypatch.setenv("ICE_CONFIG_PATH", str(path))
    monkeypatch.setenv("STUN_URLS", "stun:a.example.org, stun:b.example.org,")
    monkeypatch.setenv("USE_TURN", "off")
    monkeypatch.setenv("TURN_URLS", "turn:t.example.org")

    ice = config.get_initial_ice_config()

    assert ice["urls"] == ["stun:a.example.org", "stun:b.example.org"]
    assert ice["use_turn"] is False
    assert ice["turn_urls"] == ["turn:t.example.org"]
    assert ice["username"] == "file"


def test_relay_config_defaults_to_in_process_hub():
    relay = config.get_relay_config()

    assert relay == {
        "url": None,
        "pool_name": "public:waiting_pool",
        "subscribe_timeout": 10.0,
        "client_id": None,
    }


def test_invalid_timeout_falls_back(monkeypatch):
    monkeypatch.setenv("RELAY_SUBSCRIBE_TIMEOUT", "soon")
    monkeypatch.setenv("RELAY_URL", " ws://relay.example.org/relay ")

    relay = config.get_relay_config()

    assert relay["subscribe_timeout"] == 10.0
    assert relay["url"] == "ws://relay.example.org/relay"


@pytest.mark.parametrize("value, expected", [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("loud", logging.INFO)])
def test_log_level(monkeypatch, value, expected):
    monkeypatch.setenv("LOG_LEVEL", value)

    assert config.get_log_level() == expected
