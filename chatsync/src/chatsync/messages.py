"""Message and read-receipt reconciliation feeding the ordered chat list."""

from __future__ import annotations

import bisect
import logging
import secrets
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from . import events
from .bus import EventBus, SubscriptionGroup
from .clock import _now_ms
from .events import MessageRecord
from .store import MessageCache, PinnedChatStore, ReadMessageCache

logger = logging.getLogger(__name__)

DIVIDER = "divider"


@dataclass
class ChatSummary:
    chat_key: str
    kind: str
    chat_id: str
    title: str = ""
    last_message_id: Optional[str] = None
    last_message_preview: str = ""
    last_message_sender_id: Optional[str] = None
    last_message_ms: int = 0
    # Only meaningful when the local identity sent the last message.
    last_message_read: bool = False
    last_message_reader_count: int = 0
    unread_count: int = 0
    pinned: bool = False
    pinned_at_ms: Optional[int] = None

    @classmethod
    def for_key(cls, key: str, **kwargs: Any) -> "ChatSummary":
        kind, chat_id = events.split_chat_key(key)
        return cls(chat_key=key, kind=kind, chat_id=chat_id, **kwargs)


@dataclass
class ReadReceipt:
    message_id: str
    is_read: bool = False
    reader_ids: Set[str] = field(default_factory=set)

    @property
    def read(self) -> bool:
        return self.is_read or bool(self.reader_ids)

    def merge(self, reader_ids: Iterable[str] | None = None, is_read: bool | None = None) -> bool:
        """Fold an update in; read state only ever moves forward."""

        changed = False
        if reader_ids:
            new_readers = set(reader_ids) - self.reader_ids
            if new_readers:
                self.reader_ids |= new_readers
                changed = True
        if (is_read or self.reader_ids) and not self.is_read:
            self.is_read = True
            changed = True
        return changed


@dataclass(frozen=True)
class ChatListView:
    pinned: Tuple[ChatSummary, ...]
    others: Tuple[ChatSummary, ...]

    def rows(self) -> List[ChatSummary | str]:
        rows: List[ChatSummary | str] = list(self.pinned)
        if self.pinned and self.others:
            rows.append(DIVIDER)
        rows.extend(self.others)
        return rows

    def keys(self) -> List[str]:
        return [row if isinstance(row, str) else row.chat_key for row in self.rows()]


def order_chats(summaries: Iterable[ChatSummary]) -> ChatListView:
    pinned: List[ChatSummary] = []
    others: List[ChatSummary] = []
    for summary in summaries:
        (pinned if summary.pinned else others).append(summary)
    pinned.sort(key=lambda s: (-(s.pinned_at_ms or 0), s.chat_key))
    others.sort(key=lambda s: (-s.last_message_ms, s.chat_key))
    return ChatListView(pinned=tuple(pinned), others=tuple(others))


def _timeline_key(message: MessageRecord) -> Tuple[int, str]:
    return (message.created_ms, message.id)


class MessageSynchronizer:
    def __init__(
        self,
        link: Any,
        *,
        bus: EventBus | None = None,
        read_cache: ReadMessageCache | None = None,
        pinned_store: PinnedChatStore | None = None,
        message_cache: MessageCache | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._link = link
        self.bus = bus
        self._read_cache = read_cache
        self._pinned_store = pinned_store
        self._message_cache = message_cache
        self._now = now_func
        self._summaries: Dict[str, ChatSummary] = {}
        self._timelines: Dict[str, List[MessageRecord]] = {}
        self._by_id: Dict[str, Dict[str, MessageRecord]] = {}
        self._message_chat: Dict[str, str] = {}
        self._receipts: Dict[str, ReadReceipt] = {}
        self._pins: Dict[str, int] = pinned_store.load() if pinned_store is not None else {}
        self._view = ChatListView(pinned=(), others=())

    @property
    def identity(self) -> Optional[str]:
        return getattr(self._link, "identity", None)

    # -- queries ------------------------------------------------------------

    def chat_list(self) -> ChatListView:
        return self._view

    def summary(self, chat_key: str) -> Optional[ChatSummary]:
        return self._summaries.get(chat_key)

    def timeline(self, chat_key: str) -> List[MessageRecord]:
        return list(self._timelines.get(chat_key, []))

    def receipt(self, message_id: str) -> Optional[ReadReceipt]:
        return self._receipts.get(message_id)

    def resolve_chat_key(self, message: MessageRecord) -> Optional[str]:
        if message.chat_id is not None:
            return message.chat_key
        if message.chat_kind != events.KIND_PERSONAL:
            return None
        peer = message.receiver_id if message.sender_id == self.identity else message.sender_id
        if peer is None:
            return None
        return events.chat_key(events.KIND_PERSONAL, peer)

    # -- seeding ------------------------------------------------------------

    def load_chats(self, summaries: Iterable[ChatSummary]) -> ChatListView:
        for summary in summaries:
            existing = self._summaries.get(summary.chat_key)
            if existing is not None and existing.last_message_ms > summary.last_message_ms:
                # Live events already moved this chat past the REST snapshot.
                continue
            summary = replace(summary)
            self._apply_pin_state(summary)
            self._summaries[summary.chat_key] = summary
        return self._publish()

    def open_chat(self, chat_key: str, history: Iterable[MessageRecord] = ()) -> List[MessageRecord]:
        """Seed a chat's timeline and rebuild read flags from the durable cache."""

        history = list(history)
        if not history and self._message_cache is not None:
            history = self._message_cache.load(chat_key) or []
        read_ids = self._read_cache.load(chat_key) if self._read_cache is not None else set()
        identity = self.identity
        for message in history:
            message = replace(message)
            if message.sender_id == identity:
                receipt = self._receipts.get(message.id)
                if message.is_read:
                    self._receipts.setdefault(message.id, ReadReceipt(message.id)).merge(is_read=True)
                elif receipt is not None and receipt.read:
                    message.is_read = True
            elif message.id in read_ids:
                message.is_read = True
            self._insert(chat_key, message)
        timeline = self.timeline(chat_key)
        if self._message_cache is not None and timeline:
            self._message_cache.save(chat_key, timeline)
        return timeline

    # -- inbound ------------------------------------------------------------

    def apply_incoming(self, message: MessageRecord) -> bool:
        key = self.resolve_chat_key(message)
        if key is None:
            logger.warning("dropping message %s: cannot resolve chat", message.id)
            return False
        message = replace(message)
        own = message.sender_id == self.identity
        if own:
            message.is_read = self._is_receipt_read(message.id)
        if not self._insert(key, message):
            return False
        summary = self._ensure_summary(key)
        self._update_last_message(summary, message)
        if not own:
            summary.unread_count += 1
        if self._message_cache is not None:
            self._message_cache.append(key, message)
        self._publish()
        return True

    def apply_sent_echo(self, message: MessageRecord) -> bool:
        key = self.resolve_chat_key(message)
        if key is None:
            logger.warning("dropping send ack %s: cannot resolve chat", message.id)
            return False
        message = replace(message)
        # The ack reports the sender's own view of the message; peer read state
        # only arrives through read_receipt_updated.
        message.is_read = self._is_receipt_read(message.id)
        if not self._insert(key, message):
            return False
        summary = self._ensure_summary(key)
        self._update_last_message(summary, message)
        if self._message_cache is not None:
            self._message_cache.append(key, message)
        self._publish()
        return True

    def apply_read_receipt(
        self,
        message_id: str,
        reader_ids: Iterable[str] | None = None,
        is_read: bool | None = None,
        chat_key: str | None = None,
    ) -> bool:
        receipt = self._receipts.setdefault(message_id, ReadReceipt(message_id))
        if not receipt.merge(reader_ids, is_read):
            return False
        key = self._message_chat.get(message_id, chat_key)
        if key is None:
            # Receipt ahead of its message; applied when the message lands.
            return True
        message = self._find(key, message_id)
        if message is not None and receipt.read:
            message.is_read = True
        summary = self._summaries.get(key)
        if summary is not None and summary.last_message_id == message_id:
            summary.last_message_read = receipt.read
            summary.last_message_reader_count = len(receipt.reader_ids)
        if receipt.read:
            self._remember_read(key, [message_id])
        self._publish()
        return True

    def remove_chat(self, chat_key: str) -> bool:
        summary = self._summaries.pop(chat_key, None)
        for message in self._timelines.pop(chat_key, []):
            self._message_chat.pop(message.id, None)
        self._by_id.pop(chat_key, None)
        if self._message_cache is not None:
            self._message_cache.forget(chat_key)
        if summary is None:
            return False
        self._publish()
        return True

    def reset_unread(self, chat_key: str, count: int = 0) -> bool:
        summary = self._summaries.get(chat_key)
        if summary is None or summary.unread_count == count:
            return False
        summary.unread_count = max(0, count)
        self._publish()
        return True

    # -- local actions ------------------------------------------------------

    async def mark_visible(self, chat_key: str, message_ids: Iterable[str]) -> List[str]:
        """Mark messages seen on screen; emits ``mark_read`` for the new ones."""

        identity = self.identity
        newly_read: List[str] = []
        for message_id in message_ids:
            message = self._find(chat_key, message_id)
            if message is None or message.is_read or message.sender_id == identity:
                continue
            message.is_read = True
            newly_read.append(message_id)
        if not newly_read:
            return []

        self._remember_read(chat_key, newly_read)
        summary = self._summaries.get(chat_key)
        if summary is not None:
            summary.unread_count = max(0, summary.unread_count - len(newly_read))
        self._publish()

        kind, chat_id = events.split_chat_key(chat_key)
        for message_id in newly_read:
            await self._link.send(
                events.MARK_READ,
                {"message_id": message_id, "chat_kind": kind, "chat_id": chat_id},
            )
        return newly_read

    async def send_message(
        self,
        chat_key: str,
        content: str,
        *,
        media: Dict[str, Any] | None = None,
        reply_to_id: str | None = None,
    ) -> str:
        """Send a message; the chat list updates when ``message_send_ack`` arrives."""

        kind, chat_id = events.split_chat_key(chat_key)
        client_id = f"c_{secrets.token_urlsafe(8)}"
        body: Dict[str, Any] = {"chat_kind": kind, "content": content, "client_id": client_id}
        if kind == events.KIND_GROUP:
            body["chat_id"] = chat_id
        else:
            body["to_user_id"] = chat_id
        if media is not None:
            body["media"] = media
        if reply_to_id is not None:
            body["reply_to_id"] = reply_to_id
        await self._link.send(events.MESSAGE_SEND, body)
        return client_id

    def pin_chat(self, chat_key: str, pinned_at_ms: int | None = None) -> ChatListView:
        pinned_at_ms = self._now() if pinned_at_ms is None else pinned_at_ms
        self._pins[chat_key] = pinned_at_ms
        if self._pinned_store is not None:
            self._pinned_store.pin(chat_key, pinned_at_ms)
        summary = self._summaries.get(chat_key)
        if summary is not None:
            self._apply_pin_state(summary)
        return self._publish()

    def unpin_chat(self, chat_key: str) -> ChatListView:
        self._pins.pop(chat_key, None)
        if self._pinned_store is not None:
            self._pinned_store.unpin(chat_key)
        summary = self._summaries.get(chat_key)
        if summary is not None:
            self._apply_pin_state(summary)
        return self._publish()

    # -- wiring -------------------------------------------------------------

    def attach(self, bus: EventBus) -> SubscriptionGroup:
        self.bus = bus
        group = SubscriptionGroup(bus)
        group.on(events.MESSAGE_INCOMING, self.apply_incoming)
        group.on(events.MESSAGE_SEND_ACK, self.apply_sent_echo)
        group.on(events.READ_RECEIPT_UPDATED, self._on_read_receipt)
        group.on(events.CHAT_REMOVED, self._on_chat_removed)
        group.on(events.UNREAD_COUNT_RESET, self._on_unread_reset)
        group.on(events.IDENTITY_CHANGED, self._on_identity_changed)
        return group

    def reset(self) -> None:
        self._summaries.clear()
        self._timelines.clear()
        self._by_id.clear()
        self._message_chat.clear()
        self._receipts.clear()
        self._pins = self._pinned_store.load() if self._pinned_store is not None else {}
        self._publish()

    def _on_read_receipt(self, event: events.ReadReceiptUpdate) -> None:
        chat_key = None
        if event.chat_kind is not None and event.chat_id is not None:
            chat_key = events.chat_key(event.chat_kind, event.chat_id)
        self.apply_read_receipt(event.message_id, event.reader_ids, event.is_read, chat_key)

    def _on_chat_removed(self, event: events.ChatRemoved) -> None:
        self.remove_chat(event.chat_key)

    def _on_unread_reset(self, event: events.UnreadCountReset) -> None:
        self.reset_unread(event.chat_key, event.count)

    def _on_identity_changed(self, _identity: str) -> None:
        self.reset()

    # -- internals ----------------------------------------------------------

    def _insert(self, chat_key: str, message: MessageRecord) -> bool:
        records = self._by_id.setdefault(chat_key, {})
        if message.id in records:
            return False
        records[message.id] = message
        timeline = self._timelines.setdefault(chat_key, [])
        bisect.insort(timeline, message, key=_timeline_key)
        self._message_chat[message.id] = chat_key
        return True

    def _find(self, chat_key: str, message_id: str) -> Optional[MessageRecord]:
        return self._by_id.get(chat_key, {}).get(message_id)

    def _is_receipt_read(self, message_id: str) -> bool:
        receipt = self._receipts.get(message_id)
        return receipt is not None and receipt.read

    def _ensure_summary(self, chat_key: str) -> ChatSummary:
        summary = self._summaries.get(chat_key)
        if summary is None:
            summary = ChatSummary.for_key(chat_key)
            self._apply_pin_state(summary)
            self._summaries[chat_key] = summary
        return summary

    def _update_last_message(self, summary: ChatSummary, message: MessageRecord) -> None:
        if message.created_ms < summary.last_message_ms:
            return
        summary.last_message_id = message.id
        summary.last_message_preview = message.content or (message.media or {}).get("type", "")
        summary.last_message_sender_id = message.sender_id
        summary.last_message_ms = message.created_ms
        receipt = self._receipts.get(message.id)
        if message.sender_id == self.identity and receipt is not None:
            summary.last_message_read = receipt.read
            summary.last_message_reader_count = len(receipt.reader_ids)
        else:
            summary.last_message_read = False
            summary.last_message_reader_count = 0

    def _apply_pin_state(self, summary: ChatSummary) -> None:
        pinned_at = self._pins.get(summary.chat_key)
        summary.pinned = pinned_at is not None
        summary.pinned_at_ms = pinned_at

    def _remember_read(self, chat_key: str, message_ids: List[str]) -> None:
        if self._read_cache is not None:
            self._read_cache.add(chat_key, message_ids)
        if self._message_cache is not None:
            self._message_cache.update_read(chat_key, message_ids)

    def _publish(self) -> ChatListView:
        self._view = order_chats(self._summaries.values())
        if self.bus is not None:
            self.bus.emit(events.CHAT_LIST_UPDATED, self._view)
        return self._view
