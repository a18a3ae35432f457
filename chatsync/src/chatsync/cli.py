from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from enum import Enum
from typing import Any, Dict, Iterable, List, TextIO

from . import events
from .bus import EventBus
from .calls import CallSession, CallSignalingCoordinator
from .client import SyncClient
from .config import load_config
from .errors import AuthenticationError, MalformedEventError
from .messages import ChatListView, MessageSynchronizer
from .pins import PinnedMessageBoard
from .presence import PresenceTracker

logger = logging.getLogger(__name__)

# Frames the simulator handles itself instead of routing them to the bus.
SIM_TRACK = "track"
SIM_TICK = "tick"

TAIL_EVENTS = (
    events.CONNECTIVITY_CHANGED,
    events.PRESENCE_SNAPSHOT,
    events.PRESENCE_DELTA,
    events.TYPING_START,
    events.TYPING_STOP,
    events.MESSAGE_INCOMING,
    events.MESSAGE_SEND_ACK,
    events.READ_RECEIPT_UPDATED,
    events.CHAT_REMOVED,
    events.UNREAD_COUNT_RESET,
    events.MESSAGE_PIN_TOGGLE,
) + events.CALL_SIGNALS


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _jsonable(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(_jsonable(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


def _emit_line(output: TextIO, payload: Dict[str, Any]) -> None:
    output.write(json.dumps(_jsonable(payload), sort_keys=True) + "\n")


class _RecordingLink:
    """Stands in for the connection during a simulation; prints what would be sent."""

    def __init__(self, identity: str, output: TextIO) -> None:
        self.identity = identity
        self._output = output

    async def send(self, event_name: str, body: Dict[str, Any]) -> bool:
        self.post(event_name, body)
        return True

    def post(self, event_name: str, body: Dict[str, Any]) -> None:
        _emit_line(self._output, {"t": "out", "event": event_name, "body": body})


def simulate(frames: Iterable[dict], output: TextIO, identity: str = "me") -> int:
    """Drive the state components with inbound frames and print every change.

    Besides wire frames, two local frame types are understood:
    ``{"t": "track", "body": {"user_ids": [...]}}`` registers contacts and
    ``{"t": "tick", "body": {"ms": 1600}}`` advances the clock and runs the
    typing and call sweeps. Returns the number of frames that were dropped.
    """

    clock = {"now": 0}

    def now() -> int:
        return clock["now"]

    bus = EventBus()
    link = _RecordingLink(identity, output)
    presence = PresenceTracker(link=link, now_func=now)
    messages = MessageSynchronizer(link, now_func=now)
    calls = CallSignalingCoordinator(link, now_func=now)
    pins = PinnedMessageBoard(link, now_func=now)
    for component in (presence, messages, calls, pins):
        component.attach(bus)

    def on_chat_list(view: ChatListView) -> None:
        unread = {s.chat_key: s.unread_count for s in view.pinned + view.others}
        _emit_line(output, {"t": "chat_list", "rows": view.keys(), "unread": unread})

    def on_typing(chat_key: str) -> None:
        users = [entry.user_id for entry in presence.typing_users(chat_key)]
        _emit_line(output, {"t": "typing", "chat": chat_key, "users": users})

    def on_call(session: CallSession) -> None:
        _emit_line(output, {"t": "call", "call_id": session.call_id, "state": session.state})

    def on_pins(chat_key: str) -> None:
        pinned = [pin.message_id for pin in pins.pinned(chat_key)]
        _emit_line(output, {"t": "pins", "chat": chat_key, "pinned": pinned})

    bus.on(events.CHAT_LIST_UPDATED, on_chat_list)
    bus.on(events.PRESENCE_CHANGED, lambda changed: _emit_line(output, {"t": "presence", "changed": changed}))
    bus.on(events.TYPING_CHANGED, on_typing)
    bus.on(events.CALL_STATE_CHANGED, on_call)
    bus.on(events.PINS_CHANGED, on_pins)

    dropped = 0
    for raw in frames:
        frame_type = raw.get("t") if isinstance(raw, dict) else None
        body = (raw.get("body") if isinstance(raw, dict) else None) or {}
        if frame_type == SIM_TRACK:
            presence.track(str(user_id) for user_id in body.get("user_ids", []))
            continue
        if frame_type == SIM_TICK:
            clock["now"] += int(body.get("ms", 0))
            presence.sweep_expired_typing()
            calls.sweep()
            continue
        try:
            name, event = events.decode(raw)
        except MalformedEventError as exc:
            logger.warning("dropping frame: %s", exc)
            dropped += 1
            continue
        bus.emit(name, event)
    return dropped


def _load_frames(handle: TextIO) -> List[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, identity=args.identity)
    return 0


async def _tail(args: argparse.Namespace, output: TextIO) -> int:
    config = load_config(args.config)
    if args.url:
        config.connection.url = args.url
    client = SyncClient.websocket(config)
    group = client.subscribe()
    for name in TAIL_EVENTS:
        group.on(name, lambda event, name=name: _emit_line(output, {"t": name, "event": event}))
    try:
        await client.start(args.identity)
        while True:
            await asyncio.sleep(3600)
    except AuthenticationError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        group.close()
        await client.close()


def _run_tail(args: argparse.Namespace, output: TextIO) -> int:
    try:
        return asyncio.run(_tail(args, output))
    except KeyboardInterrupt:
        return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    parser = argparse.ArgumentParser(description="chatsync CLI")
    parser.add_argument("--log-level", default="WARNING", help="Python logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Feed inbound frames through the sync core")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--identity", default="me", help="Local identity for the simulation")

    tail_parser = subparsers.add_parser("tail", help="Connect to a gateway and print normalized events")
    tail_parser.add_argument("identity", help="Identity to authenticate as")
    tail_parser.add_argument("--url", default=None, help="Gateway WebSocket URL")
    tail_parser.add_argument("--config", default=None, help="Path to a JSON config file")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_tail(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
