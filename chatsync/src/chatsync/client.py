"""Wires the shared connection, the bus and the state components together."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

from .bus import EventBus, SubscriptionGroup
from .calls import CallSignalingCoordinator
from .clock import _now_ms
from .config import SyncConfig
from .connection import (
    Connection,
    ConnectionManager,
    IdentityResolver,
    Sleep,
    TokenRegistrar,
    TransportFactory,
)
from .messages import MessageSynchronizer
from .pins import PinnedMessageBoard
from .presence import PresenceTracker, TypingSender
from .store import InMemoryKeyValueStore, KeyValueStore, MessageCache, PinnedChatStore, ReadMessageCache
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)


class SyncClient:
    """The process-wide sync core a UI layer talks to.

    Screens never touch the connection directly: they read state from the
    components and register their own handlers through :meth:`subscribe`,
    closing the returned group when they unmount.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        config: SyncConfig | None = None,
        store: KeyValueStore | None = None,
        identity_resolver: IdentityResolver | None = None,
        token_registrar: TokenRegistrar | None = None,
        sleep: Sleep = asyncio.sleep,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or SyncConfig()
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.bus = EventBus()
        self.manager = ConnectionManager(
            transport_factory,
            config=self.config.connection,
            bus=self.bus,
            identity_resolver=identity_resolver,
            token_registrar=token_registrar,
            sleep=sleep,
            now_func=now_func,
        )
        self.presence = PresenceTracker(self.config.presence, link=self.manager, now_func=now_func)
        self.typing = TypingSender(self.manager, self.config.presence)
        self.messages = MessageSynchronizer(
            self.manager,
            read_cache=ReadMessageCache(self.store),
            pinned_store=PinnedChatStore(self.store),
            message_cache=MessageCache(self.store, now_func=now_func),
            now_func=now_func,
        )
        self.calls = CallSignalingCoordinator(self.manager, self.config.calls, now_func=now_func)
        self.pins = PinnedMessageBoard(self.manager, store=self.store, now_func=now_func)
        self._groups: List[SubscriptionGroup] = [
            component.attach(self.bus) for component in (self.presence, self.messages, self.calls, self.pins)
        ]

    @classmethod
    def websocket(cls, config: SyncConfig | None = None, **kwargs) -> "SyncClient":
        config = config or SyncConfig()
        conn = config.connection

        def factory(_identity: str) -> WebSocketTransport:
            return WebSocketTransport(conn.url, heartbeat_s=conn.heartbeat_s, max_msg_size=conn.max_msg_size)

        return cls(factory, config=config, **kwargs)

    @property
    def identity(self) -> str | None:
        return self.manager.identity

    async def start(self, identity: str | None = None) -> Connection:
        connection = await self.manager.acquire(identity)
        self.calls.start_sweeper()
        return connection

    def subscribe(self) -> SubscriptionGroup:
        return SubscriptionGroup(self.bus)

    async def close(self) -> None:
        await self.typing.close()
        await self.presence.stop_sweeper()
        await self.calls.stop_sweeper()
        await self.manager.release()
        for group in self._groups:
            group.close()
        self._groups = []
        logger.debug("sync client closed")
