"""Wire event names, canonical event types and inbound normalization.

Every inbound frame is normalized exactly once, in the connection's read
path, before it reaches the bus. Handlers therefore only ever see the
dataclasses below and never have to guess between ``chat_id``/``chatId`` or
``is_read``/``isRead`` spellings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from .clock import _now_ms, parse_timestamp_ms
from .errors import MalformedEventError

WIRE_VERSION = 1

KIND_PERSONAL = "personal"
KIND_GROUP = "group"

AUTHENTICATE = "authenticate"
AUTHENTICATED = "authenticated"
ANNOUNCE_ONLINE = "announce_online"
ANNOUNCE_OFFLINE = "announce_offline"
PRESENCE_SNAPSHOT = "presence_snapshot"
PRESENCE_DELTA = "presence_delta"
TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"
MESSAGE_SEND = "message_send"
MESSAGE_INCOMING = "message_incoming"
MESSAGE_SEND_ACK = "message_send_ack"
READ_RECEIPT_UPDATED = "read_receipt_updated"
MARK_READ = "mark_read"
CHAT_REMOVED = "chat_removed"
UNREAD_COUNT_RESET = "unread_count_reset"
MESSAGE_PIN_TOGGLE = "message_pin_toggle"
CALL_INITIATE = "call_initiate"
CALL_INCOMING = "call_incoming"
CALL_ACCEPTED = "call_accepted"
CALL_REJECTED = "call_rejected"
CALL_ENDED = "call_ended"
CALL_MISSED = "call_missed"
CALL_MUTE_TOGGLE = "call_mute_toggle"
CALL_USER_OFFLINE = "call_user_offline"

# Local-only channels, never sent over the wire.
CONNECTIVITY_CHANGED = "connectivity_changed"
IDENTITY_CHANGED = "identity_changed"
CHAT_LIST_UPDATED = "chat_list_updated"
PRESENCE_CHANGED = "presence_changed"
TYPING_CHANGED = "typing_changed"
CALL_STATE_CHANGED = "call_state_changed"
PINS_CHANGED = "pins_changed"

LOCAL_CHANNELS = frozenset(
    {
        CONNECTIVITY_CHANGED,
        IDENTITY_CHANGED,
        CHAT_LIST_UPDATED,
        PRESENCE_CHANGED,
        TYPING_CHANGED,
        CALL_STATE_CHANGED,
        PINS_CHANGED,
    }
)

CALL_SIGNALS = (
    CALL_INITIATE,
    CALL_INCOMING,
    CALL_ACCEPTED,
    CALL_REJECTED,
    CALL_ENDED,
    CALL_MISSED,
    CALL_MUTE_TOGGLE,
    CALL_USER_OFFLINE,
)


def chat_key(kind: str, chat_id: str) -> str:
    """Address a chat as ``{kind}-{id}``, e.g. ``personal-42``."""

    return f"{kind}-{chat_id}"


def split_chat_key(key: str) -> Tuple[str, str]:
    kind, sep, chat_id = key.partition("-")
    if not sep or kind not in (KIND_PERSONAL, KIND_GROUP) or not chat_id:
        raise ValueError(f"invalid chat key: {key!r}")
    return kind, chat_id


@dataclass(frozen=True)
class Authenticated:
    identity: Optional[str]
    success: bool
    message: str = ""


@dataclass(frozen=True)
class PresenceDelta:
    user_id: str
    is_online: Optional[bool]


@dataclass(frozen=True)
class PresenceSnapshot:
    entries: Tuple[PresenceDelta, ...]


@dataclass(frozen=True)
class TypingSignal:
    chat_kind: str
    chat_id: str
    user_id: str
    display_name: str
    is_typing: bool

    @property
    def chat_key(self) -> str:
        return chat_key(self.chat_kind, self.chat_id)


@dataclass
class MessageRecord:
    id: str
    chat_kind: str
    chat_id: Optional[str]
    sender_id: str
    created_ms: int
    content: str = ""
    media: Optional[Dict[str, Any]] = None
    receiver_id: Optional[str] = None
    is_read: bool = False
    reply_to_id: Optional[str] = None

    @property
    def chat_key(self) -> Optional[str]:
        if self.chat_id is None:
            return None
        return chat_key(self.chat_kind, self.chat_id)


@dataclass(frozen=True)
class ReadReceiptUpdate:
    message_id: str
    chat_kind: Optional[str]
    chat_id: Optional[str]
    reader_ids: Optional[FrozenSet[str]] = None
    is_read: Optional[bool] = None


@dataclass(frozen=True)
class ChatRemoved:
    chat_kind: str
    chat_id: str

    @property
    def chat_key(self) -> str:
        return chat_key(self.chat_kind, self.chat_id)


@dataclass(frozen=True)
class UnreadCountReset:
    chat_kind: str
    chat_id: str
    count: int

    @property
    def chat_key(self) -> str:
        return chat_key(self.chat_kind, self.chat_id)


@dataclass(frozen=True)
class MessagePinToggle:
    message_id: str
    chat_kind: str
    chat_id: str
    is_pinned: bool
    scope: str
    pinned_by: Optional[str]
    pinned_ms: Optional[int]

    @property
    def chat_key(self) -> str:
        return chat_key(self.chat_kind, self.chat_id)


@dataclass(frozen=True)
class CallSignal:
    name: str
    call_id: Optional[str]
    from_user_id: Optional[str]
    to_user_id: Optional[str]
    media: str = "audio"
    is_muted: Optional[bool] = None
    duration_s: Optional[int] = None
    reason: str = ""


def frame(name: str, body: Dict[str, Any], *, request_id: str | None = None) -> Dict[str, Any]:
    """Wrap an outbound body in the versioned wire envelope."""

    payload: Dict[str, Any] = {"v": WIRE_VERSION, "t": name, "body": body}
    if request_id is not None:
        payload["id"] = request_id
    return payload


def parse_frame(raw: Any) -> Tuple[str, Any]:
    if not isinstance(raw, dict):
        raise MalformedEventError("frame", "frame must be a JSON object")
    if raw.get("v") != WIRE_VERSION:
        raise MalformedEventError("frame", f"unsupported version {raw.get('v')!r}")
    name = raw.get("t")
    if not isinstance(name, str) or not name:
        raise MalformedEventError("frame", "frame type missing")
    body = raw.get("body")
    return name, ({} if body is None else body)


def _pick(body: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = body.get(name)
        if value is not None:
            return value
    return None


def _as_id(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, dict):
        return _as_id(value.get("id"))
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1 if value in (0, 1) else None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "online"):
            return True
        if lowered in ("0", "false", "offline"):
            return False
    return None


def _require_id(event_name: str, body: Dict[str, Any], *names: str) -> str:
    value = _as_id(_pick(body, *names))
    if value is None:
        raise MalformedEventError(event_name, f"missing {names[0]}")
    return value


def _require_body(event_name: str, body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise MalformedEventError(event_name, "body must be an object")
    return body


def _resolve_chat(body: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    kind = _pick(body, "chat_kind", "chat_type", "chatType", "kind")
    group_id = _as_id(_pick(body, "group_id", "groupId"))
    if kind not in (KIND_PERSONAL, KIND_GROUP):
        kind = KIND_GROUP if group_id is not None else KIND_PERSONAL
    chat_id = _as_id(_pick(body, "chat_id", "chatId"))
    if chat_id is None and kind == KIND_GROUP:
        chat_id = group_id
    return kind, chat_id


def _require_chat(event_name: str, body: Dict[str, Any]) -> Tuple[str, str]:
    kind, chat_id = _resolve_chat(body)
    if chat_id is None:
        raise MalformedEventError(event_name, "missing chat_id")
    return kind, chat_id


def _normalize_authenticated(name: str, body: Any) -> Authenticated:
    body = _require_body(name, body)
    success = _as_bool(body.get("success"))
    return Authenticated(
        identity=_as_id(_pick(body, "identity", "user_id", "userId")),
        success=True if success is None else success,
        message=str(body.get("message") or ""),
    )


def _normalize_presence_entry(name: str, entry: Any) -> PresenceDelta:
    entry = _require_body(name, entry)
    user_id = _require_id(name, entry, "user_id", "userId", "id")
    return PresenceDelta(user_id=user_id, is_online=_as_bool(_pick(entry, "is_online", "isOnline", "status")))


def _normalize_presence_snapshot(name: str, body: Any) -> PresenceSnapshot:
    if isinstance(body, dict):
        body = _pick(body, "statuses", "entries", "users")
    if not isinstance(body, list):
        raise MalformedEventError(name, "snapshot must be a list")
    entries: List[PresenceDelta] = []
    for entry in body:
        try:
            entries.append(_normalize_presence_entry(name, entry))
        except MalformedEventError:
            # One bad row must not discard the rest of the batch.
            continue
    return PresenceSnapshot(entries=tuple(entries))


def _normalize_presence_delta(name: str, body: Any) -> PresenceDelta:
    return _normalize_presence_entry(name, body)


def _normalize_typing(name: str, body: Any) -> TypingSignal:
    body = _require_body(name, body)
    user_id = _require_id(name, body, "user_id", "userId", "from_user_id")
    kind, chat_id = _resolve_chat(body)
    if chat_id is None:
        if kind == KIND_GROUP:
            raise MalformedEventError(name, "missing chat_id")
        # A personal typing signal is addressed by its sender.
        chat_id = user_id
    is_typing = _as_bool(_pick(body, "is_typing", "isTyping"))
    if is_typing is None:
        is_typing = name == TYPING_START
    display_name = _pick(body, "display_name", "displayName", "username")
    return TypingSignal(
        chat_kind=kind,
        chat_id=chat_id,
        user_id=user_id,
        display_name=str(display_name) if display_name is not None else user_id,
        is_typing=is_typing,
    )


def _normalize_message(name: str, body: Any) -> MessageRecord:
    body = _require_body(name, body)
    message_id = _require_id(name, body, "id", "message_id", "messageId")
    sender_id = _require_id(name, body, "sender_id", "senderId", "from_user_id", "user_id")
    kind, chat_id = _resolve_chat(body)
    if chat_id is None and kind == KIND_GROUP:
        raise MalformedEventError(name, "missing chat_id")
    created_ms = parse_timestamp_ms(_pick(body, "created_at", "createdAt", "timestamp", "ts"))
    if created_ms is None:
        if name != MESSAGE_SEND_ACK:
            raise MalformedEventError(name, "missing created_at")
        # The server acked our own send without echoing a timestamp.
        created_ms = _now_ms()
    media = _pick(body, "media", "attachment")
    if media is None and _pick(body, "media_url", "mediaUrl") is not None:
        media = {
            "url": _pick(body, "media_url", "mediaUrl"),
            "type": _pick(body, "media_type", "mediaType", "message_type") or "file",
        }
    return MessageRecord(
        id=message_id,
        chat_kind=kind,
        chat_id=chat_id,
        sender_id=sender_id,
        created_ms=created_ms,
        content=str(_pick(body, "content", "text", "message") or ""),
        media=media if isinstance(media, dict) else None,
        receiver_id=_as_id(_pick(body, "receiver_id", "receiverId", "to_user_id")),
        is_read=bool(_as_bool(_pick(body, "is_read", "isRead"))),
        reply_to_id=_as_id(_pick(body, "reply_to_id", "replyToId", "reply_to")),
    )


def _normalize_read_receipt(name: str, body: Any) -> ReadReceiptUpdate:
    body = _require_body(name, body)
    message_id = _require_id(name, body, "message_id", "messageId", "id")
    kind, chat_id = _resolve_chat(body)
    readers_raw = _pick(body, "reader_ids", "readerIds", "read_by")
    reader_ids: Optional[FrozenSet[str]] = None
    if isinstance(readers_raw, list):
        reader_ids = frozenset(r for r in (_as_id(item) for item in readers_raw) if r is not None)
    is_read = _as_bool(_pick(body, "is_read", "isRead"))
    if reader_ids is None and is_read is None:
        raise MalformedEventError(name, "missing reader_ids or is_read")
    has_chat = _pick(body, "chat_id", "chatId", "group_id", "groupId") is not None
    return ReadReceiptUpdate(
        message_id=message_id,
        chat_kind=kind if has_chat else None,
        chat_id=chat_id,
        reader_ids=reader_ids,
        is_read=is_read,
    )


def _normalize_chat_removed(name: str, body: Any) -> ChatRemoved:
    kind, chat_id = _require_chat(name, _require_body(name, body))
    return ChatRemoved(chat_kind=kind, chat_id=chat_id)


def _normalize_unread_reset(name: str, body: Any) -> UnreadCountReset:
    body = _require_body(name, body)
    kind, chat_id = _require_chat(name, body)
    count = _pick(body, "count", "unread_count", "unreadCount")
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        count = 0
    return UnreadCountReset(chat_kind=kind, chat_id=chat_id, count=count)


def _normalize_pin_toggle(name: str, body: Any) -> MessagePinToggle:
    body = _require_body(name, body)
    message_id = _require_id(name, body, "message_id", "messageId")
    kind, chat_id = _require_chat(name, body)
    is_pinned = _as_bool(_pick(body, "is_pinned", "isPinned"))
    if is_pinned is None:
        raise MalformedEventError(name, "missing is_pinned")
    scope = _pick(body, "scope", "visibility")
    return MessagePinToggle(
        message_id=message_id,
        chat_kind=kind,
        chat_id=chat_id,
        is_pinned=is_pinned,
        scope=scope if scope in ("all", "owner") else "all",
        pinned_by=_as_id(_pick(body, "pinned_by", "pinned_by_user_id", "pinnedBy")),
        pinned_ms=parse_timestamp_ms(_pick(body, "pinned_at", "pinnedAt")),
    )


def _normalize_call(name: str, body: Any) -> CallSignal:
    body = _require_body(name, body)
    from_user = _as_id(_pick(body, "from_user_id", "fromUserId", "caller_id", "from_user"))
    to_user = _as_id(_pick(body, "to_user_id", "toUserId", "receiver_id"))
    call_id = _as_id(_pick(body, "call_id", "callId"))
    if call_id is None and from_user is None and to_user is None:
        raise MalformedEventError(name, "missing call_id")
    media = _pick(body, "media", "call_type", "callType")
    duration = _pick(body, "duration", "duration_s")
    return CallSignal(
        name=name,
        call_id=call_id,
        from_user_id=from_user,
        to_user_id=to_user,
        media=media if media in ("audio", "video") else "audio",
        is_muted=_as_bool(_pick(body, "is_muted", "isMuted")),
        duration_s=duration if isinstance(duration, int) and not isinstance(duration, bool) else None,
        reason=str(_pick(body, "reason", "message") or ""),
    )


_NORMALIZERS: Dict[str, Callable[[str, Any], Any]] = {
    AUTHENTICATED: _normalize_authenticated,
    PRESENCE_SNAPSHOT: _normalize_presence_snapshot,
    PRESENCE_DELTA: _normalize_presence_delta,
    TYPING_START: _normalize_typing,
    TYPING_STOP: _normalize_typing,
    MESSAGE_INCOMING: _normalize_message,
    MESSAGE_SEND_ACK: _normalize_message,
    READ_RECEIPT_UPDATED: _normalize_read_receipt,
    CHAT_REMOVED: _normalize_chat_removed,
    UNREAD_COUNT_RESET: _normalize_unread_reset,
    MESSAGE_PIN_TOGGLE: _normalize_pin_toggle,
}
for _call_event in CALL_SIGNALS:
    _NORMALIZERS[_call_event] = _normalize_call


def normalize(name: str, body: Any) -> Any:
    """Return the canonical event for ``name``.

    Unknown event names pass through untouched so ad-hoc channels still
    reach their subscribers. Raises :class:`MalformedEventError` when a
    required field is absent.
    """

    normalizer = _NORMALIZERS.get(name)
    if normalizer is None:
        return body
    return normalizer(name, body)


def decode(raw: Any) -> Tuple[str, Any]:
    """Parse and normalize one inbound wire frame."""

    name, body = parse_frame(raw)
    if name in LOCAL_CHANNELS:
        raise MalformedEventError(name, "local-only channel received from the wire")
    return name, normalize(name, body)
