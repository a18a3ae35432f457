from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from . import events
from .bus import EventBus, SubscriptionGroup
from .clock import _now_ms
from .store import KeyValueStore

logger = logging.getLogger(__name__)

SCOPE_ALL = "all"
SCOPE_OWNER = "owner"

PINNED_MESSAGES_PREFIX = "pinned_messages:"


@dataclass(frozen=True)
class PinnedMessage:
    message_id: str
    chat_key: str
    scope: str
    pinned_ms: int
    pinned_by: Optional[str]


class PinnedMessageBoard:
    """Pinned messages per chat; only explicit pin/unpin changes them."""

    def __init__(
        self,
        link: Any,
        *,
        bus: EventBus | None = None,
        store: KeyValueStore | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._link = link
        self.bus = bus
        self._store = store
        self._now = now_func
        self._pins: Dict[str, Dict[str, PinnedMessage]] = {}

    @property
    def identity(self) -> Optional[str]:
        return getattr(self._link, "identity", None)

    def pinned(self, chat_key: str) -> List[PinnedMessage]:
        chat = self._load(chat_key)
        return sorted(chat.values(), key=lambda p: (-p.pinned_ms, p.message_id))

    def is_pinned(self, chat_key: str, message_id: str) -> bool:
        return message_id in self._load(chat_key)

    async def pin(self, chat_key: str, message_id: str, scope: str = SCOPE_ALL) -> PinnedMessage:
        if scope not in (SCOPE_ALL, SCOPE_OWNER):
            raise ValueError(f"unknown pin scope: {scope!r}")
        pin = PinnedMessage(
            message_id=message_id,
            chat_key=chat_key,
            scope=scope,
            pinned_ms=self._now(),
            pinned_by=self.identity,
        )
        self._put(pin)
        await self._link.send(events.MESSAGE_PIN_TOGGLE, self._body(pin, is_pinned=True))
        return pin

    async def unpin(self, chat_key: str, message_id: str) -> bool:
        pin = self._load(chat_key).get(message_id)
        if pin is None:
            return False
        self._remove(chat_key, message_id)
        await self._link.send(events.MESSAGE_PIN_TOGGLE, self._body(pin, is_pinned=False))
        return True

    def apply_toggle(self, event: events.MessagePinToggle) -> bool:
        chat_key = event.chat_key
        if not event.is_pinned:
            return self._remove(chat_key, event.message_id)
        if event.scope == SCOPE_OWNER and event.pinned_by != self.identity:
            # Owner-only pins are invisible to everyone but the pinner.
            logger.debug("ignoring owner-only pin of %s by %s", event.message_id, event.pinned_by)
            return False
        pin = PinnedMessage(
            message_id=event.message_id,
            chat_key=chat_key,
            scope=event.scope,
            pinned_ms=event.pinned_ms if event.pinned_ms is not None else self._now(),
            pinned_by=event.pinned_by,
        )
        if self._load(chat_key).get(pin.message_id) == pin:
            return False
        self._put(pin)
        return True

    def attach(self, bus: EventBus) -> SubscriptionGroup:
        self.bus = bus
        group = SubscriptionGroup(bus)
        group.on(events.MESSAGE_PIN_TOGGLE, self.apply_toggle)
        group.on(events.IDENTITY_CHANGED, lambda _identity: self._pins.clear())
        return group

    def _body(self, pin: PinnedMessage, *, is_pinned: bool) -> Dict[str, Any]:
        kind, chat_id = events.split_chat_key(pin.chat_key)
        return {
            "message_id": pin.message_id,
            "chat_kind": kind,
            "chat_id": chat_id,
            "is_pinned": is_pinned,
            "scope": pin.scope,
            "pinned_by": pin.pinned_by,
            "pinned_at": pin.pinned_ms,
        }

    def _storage_key(self, chat_key: str) -> str:
        return f"{PINNED_MESSAGES_PREFIX}{self.identity}:{chat_key}"

    def _load(self, chat_key: str) -> Dict[str, PinnedMessage]:
        chat = self._pins.get(chat_key)
        if chat is not None:
            return chat
        chat = {}
        raw = self._store.get(self._storage_key(chat_key)) if self._store is not None else None
        for item in raw or []:
            try:
                pin = PinnedMessage(**item)
            except TypeError:
                continue
            chat[pin.message_id] = pin
        self._pins[chat_key] = chat
        return chat

    def _save(self, chat_key: str) -> None:
        if self._store is None:
            return
        chat = self._pins.get(chat_key, {})
        if chat:
            self._store.set(self._storage_key(chat_key), [asdict(pin) for pin in chat.values()])
        else:
            self._store.delete(self._storage_key(chat_key))

    def _put(self, pin: PinnedMessage) -> None:
        self._load(pin.chat_key)[pin.message_id] = pin
        self._save(pin.chat_key)
        self._notify(pin.chat_key)

    def _remove(self, chat_key: str, message_id: str) -> bool:
        if self._load(chat_key).pop(message_id, None) is None:
            return False
        self._save(chat_key)
        self._notify(chat_key)
        return True

    def _notify(self, chat_key: str) -> None:
        if self.bus is not None:
            self.bus.emit(events.PINS_CHANGED, chat_key)
