import json

from chatsync.config import SyncConfig, load_config


def test_defaults_match_documented_timeouts():
    config = SyncConfig()

    assert config.connection.acquire_timeout_s == 5.0
    assert config.connection.reconnect_attempts == 10
    assert config.presence.typing_decay_ms == 1500
    assert config.presence.typing_quiet_period_s == 3.0
    assert config.calls.ring_timeout_ms == 30_000


def test_load_config_overlays_known_keys(tmp_path):
    path = tmp_path / "chatsync.json"
    path.write_text(
        json.dumps(
            {
                "connection": {"url": "wss://gw.example/v1/ws", "bogus": 1},
                "calls": {"ring_timeout_ms": 45_000},
                "unknown_section": {"x": 1},
            }
        )
    )

    config = load_config(path)

    assert config.connection.url == "wss://gw.example/v1/ws"
    assert not hasattr(config.connection, "bogus")
    assert config.calls.ring_timeout_ms == 45_000
    assert config.presence.typing_decay_ms == 1500


def test_load_config_falls_back_to_defaults(tmp_path):
    missing = load_config(tmp_path / "missing.json")
    broken_path = tmp_path / "broken.json"
    broken_path.write_text("[1, 2")

    assert missing == SyncConfig()
    assert load_config(broken_path) == SyncConfig()
    assert load_config(None) == SyncConfig()
