from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from . import events
from .bus import EventBus, SubscriptionGroup
from .clock import _now_ms
from .config import PresenceConfig
from .sweeper import Sweeper

logger = logging.getLogger(__name__)


@dataclass
class TypingEntry:
    user_id: str
    display_name: str
    last_signal_ms: int


class PresenceTracker:
    """Online/offline per contact and per-chat typing sets with decay."""

    def __init__(
        self,
        config: PresenceConfig | None = None,
        *,
        bus: EventBus | None = None,
        link: Any = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or PresenceConfig()
        self.bus = bus
        self._link = link
        self._now = now_func
        self._known: Set[str] = set()
        # Peers of the personal chats currently in the chat list.
        self._chat_peers: Set[str] = set()
        self._online: Dict[str, bool] = {}
        self._typing: Dict[str, Dict[str, TypingEntry]] = {}
        self._sweeper = Sweeper(self.sweep_expired_typing, self.config.sweeper_interval_seconds, name="typing-sweeper")
        self._sweeper_refs = 0

    # -- contacts -----------------------------------------------------------

    def track(self, user_ids: Iterable[str]) -> None:
        self._known.update(str(u) for u in user_ids)

    def untrack(self, user_ids: Iterable[str]) -> None:
        for user_id in map(str, user_ids):
            self._known.discard(user_id)
            if user_id not in self._chat_peers:
                self._online.pop(user_id, None)

    def is_known(self, user_id: str) -> bool:
        return user_id in self._known or user_id in self._chat_peers

    def sync_chat_peers(self, peer_ids: Iterable[str]) -> None:
        """Replace the set of users known through the chat list."""

        peers = {str(p) for p in peer_ids}
        for gone in self._chat_peers - peers - self._known:
            self._online.pop(gone, None)
        self._chat_peers = peers

    def is_online(self, user_id: str) -> Optional[bool]:
        return self._online.get(user_id)

    def online_users(self) -> List[str]:
        return sorted(user_id for user_id, online in self._online.items() if online)

    def apply_snapshot(self, entries: Iterable[events.PresenceDelta]) -> Dict[str, bool]:
        changed: Dict[str, bool] = {}
        for entry in entries:
            if self._set_online(entry.user_id, entry.is_online):
                changed[entry.user_id] = self._online[entry.user_id]
        self._notify(events.PRESENCE_CHANGED, changed)
        return changed

    def apply_delta(self, user_id: str, is_online: Optional[bool]) -> bool:
        if not self._set_online(user_id, is_online):
            return False
        self._notify(events.PRESENCE_CHANGED, {user_id: self._online[user_id]})
        return True

    def _set_online(self, user_id: str, is_online: Optional[bool]) -> bool:
        if not self.is_known(user_id):
            logger.debug("ignoring presence for unknown user %s", user_id)
            return False
        if is_online is None:
            return False
        if self._online.get(user_id) == is_online:
            return False
        self._online[user_id] = is_online
        return True

    # -- typing -------------------------------------------------------------

    def set_typing(self, chat_key: str, user_id: str, display_name: str, now_ms: int | None = None) -> None:
        now_ms = self._now() if now_ms is None else now_ms
        chat = self._typing.setdefault(chat_key, {})
        is_new = user_id not in chat
        chat[user_id] = TypingEntry(user_id=user_id, display_name=display_name, last_signal_ms=now_ms)
        if is_new:
            self._notify(events.TYPING_CHANGED, chat_key)

    def clear_typing(self, chat_key: str, user_id: str) -> bool:
        chat = self._typing.get(chat_key)
        if not chat or chat.pop(user_id, None) is None:
            return False
        if not chat:
            self._typing.pop(chat_key, None)
        self._notify(events.TYPING_CHANGED, chat_key)
        return True

    def typing_users(self, chat_key: str) -> List[TypingEntry]:
        return sorted(self._typing.get(chat_key, {}).values(), key=lambda e: e.last_signal_ms)

    def typing_chats(self) -> List[str]:
        return sorted(self._typing)

    def sweep_expired_typing(self, now_ms: int | None = None) -> List[Tuple[str, str]]:
        now_ms = self._now() if now_ms is None else now_ms
        removed: List[Tuple[str, str]] = []
        for chat_key, chat in list(self._typing.items()):
            for user_id, entry in list(chat.items()):
                if now_ms - entry.last_signal_ms > self.config.typing_decay_ms:
                    chat.pop(user_id, None)
                    removed.append((chat_key, user_id))
            if not chat:
                self._typing.pop(chat_key, None)
        for chat_key in sorted({chat_key for chat_key, _ in removed}):
            self._notify(events.TYPING_CHANGED, chat_key)
        return removed

    # -- sweeper lifecycle --------------------------------------------------

    def retain_sweeper(self) -> None:
        """Called when a chat-list or chat-detail view mounts."""

        self._sweeper_refs += 1
        self.start_sweeper()

    async def release_sweeper(self) -> None:
        if self._sweeper_refs == 0:
            return
        self._sweeper_refs -= 1
        if self._sweeper_refs == 0:
            await self.stop_sweeper()

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper.running

    def start_sweeper(self) -> None:
        self._sweeper.start()

    async def stop_sweeper(self) -> None:
        await self._sweeper.stop()

    # -- wiring -------------------------------------------------------------

    def attach(self, bus: EventBus) -> SubscriptionGroup:
        self.bus = bus
        group = SubscriptionGroup(bus)
        group.on(events.PRESENCE_SNAPSHOT, self._on_snapshot)
        group.on(events.PRESENCE_DELTA, self._on_delta)
        group.on(events.TYPING_START, self._on_typing)
        group.on(events.TYPING_STOP, self._on_typing)
        group.on(events.CHAT_LIST_UPDATED, self._on_chat_list)
        group.on(events.IDENTITY_CHANGED, self._on_identity_changed)
        return group

    def reset(self) -> None:
        self._online.clear()
        self._typing.clear()

    def _on_snapshot(self, event: events.PresenceSnapshot) -> None:
        self.apply_snapshot(event.entries)

    def _on_delta(self, event: events.PresenceDelta) -> None:
        self.apply_delta(event.user_id, event.is_online)

    def _on_typing(self, event: events.TypingSignal) -> None:
        identity = getattr(self._link, "identity", None)
        if identity is not None and event.user_id == identity:
            return
        if event.is_typing:
            self.set_typing(event.chat_key, event.user_id, event.display_name)
        else:
            self.clear_typing(event.chat_key, event.user_id)

    def _on_chat_list(self, view: Any) -> None:
        self.sync_chat_peers(
            summary.chat_id for summary in view.pinned + view.others if summary.kind == events.KIND_PERSONAL
        )

    def _on_identity_changed(self, _identity: str) -> None:
        self.reset()
        self._known.clear()
        self._chat_peers.clear()

    def _notify(self, event_name: str, payload: Any) -> None:
        if self.bus is not None and payload:
            self.bus.emit(event_name, payload)


class TypingSender:
    """Outgoing typing signals with a quiet-period auto stop."""

    def __init__(self, link: Any, config: PresenceConfig | None = None) -> None:
        self._link = link
        self.config = config or PresenceConfig()
        self._timers: Dict[str, asyncio.Task] = {}

    def _body(self, chat_key: str, display_name: str) -> Dict[str, Any]:
        kind, chat_id = events.split_chat_key(chat_key)
        body: Dict[str, Any] = {
            "chat_kind": kind,
            "user_id": self._link.identity,
            "display_name": display_name,
        }
        if kind == events.KIND_GROUP:
            body["chat_id"] = chat_id
        else:
            # Personal chats are keyed by the peer; the receiver sees us as the chat.
            body["to_user_id"] = chat_id
        return body

    async def on_input(self, chat_key: str, text: str, display_name: str = "") -> None:
        if not text:
            await self.stop(chat_key, display_name)
            return
        self._cancel_timer(chat_key)
        self._timers[chat_key] = asyncio.create_task(self._stop_after_quiet(chat_key, display_name))
        await self._link.send(events.TYPING_START, self._body(chat_key, display_name))

    async def stop(self, chat_key: str, display_name: str = "") -> None:
        self._cancel_timer(chat_key)
        await self._link.send(events.TYPING_STOP, self._body(chat_key, display_name))

    def pending(self, chat_key: str) -> bool:
        task = self._timers.get(chat_key)
        return task is not None and not task.done()

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    def _cancel_timer(self, chat_key: str) -> None:
        task = self._timers.pop(chat_key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _stop_after_quiet(self, chat_key: str, display_name: str) -> None:
        try:
            await asyncio.sleep(self.config.typing_quiet_period_s)
        except asyncio.CancelledError:
            return
        self._timers.pop(chat_key, None)
        await self._link.send(events.TYPING_STOP, self._body(chat_key, display_name))
