"""Durable client-side state: read-message ids, pinned chats, cached messages.

Only the read/write contract matters to the core, so the stores sit on a
small ``KeyValueStore`` interface. ``JsonFileStore`` persists the whole map
atomically (temp file, fsync, rename) after every write.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .clock import _now_ms
from .events import MessageRecord

logger = logging.getLogger(__name__)

READ_MESSAGES_PREFIX = "read_messages:"
PINNED_CHATS_KEY = "pinned_chats"
CHAT_MESSAGES_PREFIX = "chat_messages:"

MAX_MESSAGES_PER_CHAT = 100
MAX_CACHE_AGE_MS = 7 * 24 * 60 * 60 * 1000


class KeyValueStore:
    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so callers cannot alias stored state.
        self._data[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


def _atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


class JsonFileStore(KeyValueStore):
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, ValueError):
            logger.warning("discarding unreadable store at %s", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        data = dict(self._data)
        data[key] = value
        _atomic_write_json(self.path, data)
        self._data = data

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            _atomic_write_json(self.path, self._data)

    def keys(self) -> List[str]:
        return list(self._data)


class ReadMessageCache:
    """Per-chat list of message ids the local identity has seen as read."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def load(self, chat_key: str) -> set[str]:
        value = self._store.get(READ_MESSAGES_PREFIX + chat_key)
        if not isinstance(value, list):
            return set()
        return {str(item) for item in value}

    def add(self, chat_key: str, message_ids: Iterable[str]) -> set[str]:
        current = self.load(chat_key)
        merged = current | {str(mid) for mid in message_ids}
        if merged != current:
            self._store.set(READ_MESSAGES_PREFIX + chat_key, sorted(merged))
        return merged

    def forget(self, chat_key: str) -> None:
        self._store.delete(READ_MESSAGES_PREFIX + chat_key)


class PinnedChatStore:
    """``{kind}-{chatId}`` -> pin timestamp (ms)."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def load(self) -> Dict[str, int]:
        value = self._store.get(PINNED_CHATS_KEY)
        if not isinstance(value, dict):
            return {}
        parsed: Dict[str, int] = {}
        for key, pinned_at in value.items():
            try:
                parsed[str(key)] = int(pinned_at)
            except (TypeError, ValueError):
                continue
        return parsed

    def pin(self, chat_key: str, pinned_at_ms: int) -> None:
        pins = self.load()
        pins[chat_key] = int(pinned_at_ms)
        self._store.set(PINNED_CHATS_KEY, pins)

    def unpin(self, chat_key: str) -> None:
        pins = self.load()
        if pins.pop(chat_key, None) is not None:
            self._store.set(PINNED_CHATS_KEY, pins)


class MessageCache:
    """Recent messages per chat so an opened chat can render before REST returns."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_messages: int = MAX_MESSAGES_PER_CHAT,
        max_age_ms: int = MAX_CACHE_AGE_MS,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self.max_messages = max_messages
        self.max_age_ms = max_age_ms
        self._now = now_func

    def save(self, chat_key: str, messages: Iterable[MessageRecord]) -> None:
        records = [asdict(message) for message in messages][-self.max_messages :]
        if not records:
            return
        self._store.set(CHAT_MESSAGES_PREFIX + chat_key, {"cached_at": self._now(), "messages": records})

    def append(self, chat_key: str, message: MessageRecord) -> None:
        existing = self.load(chat_key) or []
        if any(item.id == message.id for item in existing):
            return
        existing.append(message)
        self.save(chat_key, existing)

    def update_read(self, chat_key: str, message_ids: Iterable[str]) -> None:
        wanted = set(message_ids)
        existing = self.load(chat_key)
        if not existing:
            return
        changed = False
        for message in existing:
            if message.id in wanted and not message.is_read:
                message.is_read = True
                changed = True
        if changed:
            self.save(chat_key, existing)

    def load(self, chat_key: str) -> Optional[List[MessageRecord]]:
        key = CHAT_MESSAGES_PREFIX + chat_key
        value = self._store.get(key)
        if not isinstance(value, dict):
            return None
        cached_at = value.get("cached_at")
        if not isinstance(cached_at, int) or self._now() - cached_at > self.max_age_ms:
            self._store.delete(key)
            return None
        messages: List[MessageRecord] = []
        for item in value.get("messages") or []:
            try:
                messages.append(MessageRecord(**item))
            except TypeError:
                continue
        return messages

    def forget(self, chat_key: str) -> None:
        self._store.delete(CHAT_MESSAGES_PREFIX + chat_key)

    def prune(self) -> int:
        """Drop every expired chat entry; returns how many were removed."""

        removed = 0
        for key in self._store.keys():
            if key.startswith(CHAT_MESSAGES_PREFIX) and self.load(key[len(CHAT_MESSAGES_PREFIX) :]) is None:
                removed += 1
        return removed
