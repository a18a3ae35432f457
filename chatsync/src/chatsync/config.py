"""Tunables for the sync core, grouped per component."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict


@dataclass
class ConnectionConfig:
    url: str = "ws://127.0.0.1:8080/v1/ws"
    acquire_timeout_s: float = 5.0
    reconnect_attempts: int = 10
    reconnect_delay_s: float = 1.0
    reconnect_delay_max_s: float = 5.0
    heartbeat_s: float | None = 30.0
    max_msg_size: int = 1_048_576


@dataclass
class PresenceConfig:
    typing_decay_ms: int = 1500
    typing_quiet_period_s: float = 3.0
    sweeper_interval_seconds: float = 1.0


@dataclass
class CallConfig:
    ring_timeout_ms: int = 30_000
    terminal_grace_ms: int = 2000
    sweeper_interval_seconds: float = 1.0


@dataclass
class SyncConfig:
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    calls: CallConfig = field(default_factory=CallConfig)


def _apply(section: Any, values: Dict[str, Any]) -> None:
    known = {f.name for f in fields(section)}
    for key, value in values.items():
        if key in known:
            setattr(section, key, value)


def load_config(path: Path | str | None = None) -> SyncConfig:
    """Build a config from defaults, overlaid with a JSON file when present.

    The file holds one object per section, e.g.
    ``{"connection": {"url": "wss://gw.example/v1/ws"}}``. Unknown sections
    and keys are ignored; a missing or unreadable file yields the defaults.
    """

    config = SyncConfig()
    if path is None:
        return config
    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return config
    except json.JSONDecodeError:
        return config
    if not isinstance(data, dict):
        return config

    for section_name in ("connection", "presence", "calls"):
        values = data.get(section_name)
        if isinstance(values, dict):
            _apply(getattr(config, section_name), values)
    return config
