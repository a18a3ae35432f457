"""The one shared connection and the manager that owns it.

``ConnectionManager.acquire`` is the only way consumers obtain the
connection. Concurrent acquisitions for the same identity share a single
in-flight attempt; an acquisition for a different identity first announces
the old identity offline and tears its connection down.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set

from . import events
from .bus import EventBus
from .clock import _now_ms
from .config import ConnectionConfig
from .errors import AuthenticationError, MalformedEventError, TransportError, Unauthenticated
from .transport import Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Transport]
TokenRegistrar = Callable[["Connection"], Awaitable[None]]
IdentityResolver = Callable[[], Optional[str]]
Sleep = Callable[[float], Awaitable[None]]

MAX_OUTBOX = 256


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ConnectivityStatus:
    identity: str
    state: ConnectionState
    retry_count: int


class Connection:
    def __init__(
        self,
        identity: str,
        *,
        bus: EventBus,
        transport_factory: TransportFactory,
        config: ConnectionConfig | None = None,
        token_registrar: TokenRegistrar | None = None,
        sleep: Sleep = asyncio.sleep,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.identity = identity
        self.bus = bus
        self.config = config or ConnectionConfig()
        self.state = ConnectionState.DISCONNECTED
        self.retry_count = 0
        self._transport_factory = transport_factory
        self._token_registrar = token_registrar
        self._sleep = sleep
        self._now = now_func
        self._transport: Transport | None = None
        self._auth_waiter: asyncio.Future | None = None
        self._establish_task: asyncio.Task | None = None
        self._outbox: Deque[Dict[str, Any]] = deque(maxlen=MAX_OUTBOX)
        self._background: Set[asyncio.Task] = set()
        self.transports_opened = 0

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def establishing(self) -> asyncio.Task | None:
        task = self._establish_task
        if task is None or task.done():
            return None
        return task

    def start(self) -> asyncio.Task:
        """Begin (or join) the connect + authenticate attempt."""

        task = self.establishing
        if task is not None:
            return task
        if self.state is ConnectionState.TERMINATED:
            raise TransportError("connection already terminated")
        reconnecting = self.state is not ConnectionState.DISCONNECTED or self.transports_opened > 0
        task = asyncio.create_task(self._establish(reconnecting=reconnecting))
        task.add_done_callback(self._establish_finished)
        self._establish_task = task
        return task

    async def send(self, event_name: str, body: Dict[str, Any], *, request_id: str | None = None) -> bool:
        """Write a frame now, or queue it until the next successful handshake.

        Returns ``True`` only when the frame reached the socket. Transport
        failures are never raised to the caller.
        """

        payload = events.frame(event_name, body, request_id=request_id)
        if self.state is ConnectionState.TERMINATED:
            logger.warning("dropping %s on terminated connection for %s", event_name, self.identity)
            return False
        if self.state is ConnectionState.CONNECTED and self._transport is not None:
            try:
                await self._transport.send(payload)
                return True
            except TransportError as exc:
                logger.info("send of %s failed, queueing: %s", event_name, exc)
        if len(self._outbox) == self._outbox.maxlen:
            logger.warning("outbox full for %s, dropping oldest frame", self.identity)
        self._outbox.append(payload)
        return False

    def post(self, event_name: str, body: Dict[str, Any]) -> asyncio.Task:
        """Fire-and-forget ``send`` for synchronous call sites (timers, sweeps)."""

        task = asyncio.create_task(self.send(event_name, body))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def terminate(self, *, announce: bool = True) -> None:
        if self.state is ConnectionState.TERMINATED:
            return
        if announce and self.state is ConnectionState.CONNECTED and self._transport is not None:
            offline = events.frame(
                events.ANNOUNCE_OFFLINE, {"identity": self.identity, "timestamp": self._now()}
            )
            try:
                await self._transport.send(offline)
            except TransportError as exc:
                logger.info("announce_offline for %s not delivered: %s", self.identity, exc)
        self._set_state(ConnectionState.TERMINATED)
        task = self.establishing
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._fail_auth_waiter(TransportError("connection terminated"))
        await self._drop_transport()
        self._outbox.clear()
        for pending in list(self._background):
            pending.cancel()

    async def _establish(self, *, reconnecting: bool) -> "Connection":
        attempts = 0
        while True:
            self._set_state(ConnectionState.RECONNECTING if reconnecting else ConnectionState.CONNECTING)
            try:
                await self._connect_once()
                return self
            except AuthenticationError:
                await self._drop_transport()
                self._set_state(ConnectionState.TERMINATED)
                raise
            except TransportError as exc:
                await self._drop_transport()
                attempts += 1
                self.retry_count = attempts
                if attempts > self.config.reconnect_attempts:
                    logger.warning("giving up on %s after %d attempts: %s", self.identity, attempts - 1, exc)
                    self._set_state(ConnectionState.DISCONNECTED)
                    raise
                delay = min(
                    self.config.reconnect_delay_s * (2 ** (attempts - 1)),
                    self.config.reconnect_delay_max_s,
                )
                logger.info("connect attempt %d for %s failed (%s); retrying in %.1fs", attempts, self.identity, exc, delay)
                reconnecting = True
                self._set_state(ConnectionState.RECONNECTING)
                await self._sleep(delay)

    async def _connect_once(self) -> None:
        await self._drop_transport()
        transport = self._transport_factory(self.identity)
        transport.bind(self._on_frame, self._on_transport_closed)
        self._transport = transport
        await transport.open()
        self.transports_opened += 1

        loop = asyncio.get_running_loop()
        self._auth_waiter = loop.create_future()
        self._set_state(ConnectionState.AUTHENTICATING)
        await transport.send(events.frame(events.AUTHENTICATE, {"identity": self.identity}))
        result: events.Authenticated = await self._auth_waiter
        self._auth_waiter = None
        if not result.success:
            raise AuthenticationError(self.identity, result.message or "identity rejected")
        if result.identity is not None and result.identity != self.identity:
            raise AuthenticationError(self.identity, f"server bound identity {result.identity!r}")

        self.retry_count = 0
        self._set_state(ConnectionState.CONNECTED)
        await transport.send(
            events.frame(events.ANNOUNCE_ONLINE, {"identity": self.identity, "timestamp": self._now()})
        )
        await self._flush_outbox()
        if self._token_registrar is not None:
            try:
                await self._token_registrar(self)
            except Exception:
                logger.exception("token registration for %s failed", self.identity)

    async def _flush_outbox(self) -> None:
        while self._outbox and self.state is ConnectionState.CONNECTED and self._transport is not None:
            payload = self._outbox.popleft()
            try:
                await self._transport.send(payload)
            except TransportError:
                self._outbox.appendleft(payload)
                return

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        transport.bind(lambda _payload: None, lambda _exc: None)
        try:
            await transport.close()
        except TransportError as exc:
            logger.debug("closing transport for %s: %s", self.identity, exc)

    def _on_frame(self, raw: Any) -> None:
        try:
            name, event = events.decode(raw)
        except MalformedEventError as exc:
            logger.warning("dropping inbound frame: %s", exc)
            return
        if name == events.AUTHENTICATED:
            waiter = self._auth_waiter
            if waiter is not None and not waiter.done():
                waiter.set_result(event)
        self.bus.emit(name, event)

    def _on_transport_closed(self, exc: Optional[Exception]) -> None:
        if self.state is ConnectionState.TERMINATED:
            return
        error = exc if isinstance(exc, TransportError) else TransportError(str(exc or "socket closed"))
        if self._fail_auth_waiter(error):
            # The handshake loop owns retrying.
            return
        if self.state is ConnectionState.CONNECTED:
            logger.info("connection for %s lost: %s", self.identity, error)
            self._set_state(ConnectionState.RECONNECTING)
            self.start()

    def _fail_auth_waiter(self, error: Exception) -> bool:
        waiter = self._auth_waiter
        if waiter is None or waiter.done():
            return False
        waiter.set_exception(error)
        return True

    def _establish_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, AuthenticationError):
            logger.warning("handshake for %s rejected: %s", self.identity, exc)
        elif exc is not None:
            logger.debug("establish for %s ended: %s", self.identity, exc)

    def _set_state(self, state: ConnectionState) -> None:
        if self.state is state:
            return
        self.state = state
        self.bus.emit(
            events.CONNECTIVITY_CHANGED,
            ConnectivityStatus(identity=self.identity, state=state, retry_count=self.retry_count),
        )


class ConnectionManager:
    """Process-wide owner of the single logical connection."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        config: ConnectionConfig | None = None,
        bus: EventBus | None = None,
        identity_resolver: IdentityResolver | None = None,
        token_registrar: TokenRegistrar | None = None,
        sleep: Sleep = asyncio.sleep,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or ConnectionConfig()
        self.bus = bus or EventBus()
        self._transport_factory = transport_factory
        self._identity_resolver = identity_resolver
        self._token_registrar = token_registrar
        self._sleep = sleep
        self._now = now_func
        self._connection: Connection | None = None
        self._lock = asyncio.Lock()
        self.connections_created = 0

    @property
    def current(self) -> Connection | None:
        return self._connection

    @property
    def identity(self) -> str | None:
        return self._connection.identity if self._connection is not None else None

    async def acquire(self, identity: str | None = None) -> Connection:
        if identity is None and self._identity_resolver is not None:
            identity = self._identity_resolver()
        if not identity:
            raise Unauthenticated()

        async with self._lock:
            connection = self._connection
            if connection is not None and connection.identity != identity:
                logger.info("identity change %s -> %s", connection.identity, identity)
                self._connection = None
                await connection.terminate(announce=True)
                self.bus.emit(events.IDENTITY_CHANGED, identity)
                connection = None
            if connection is not None and connection.state is ConnectionState.TERMINATED:
                self._connection = None
                connection = None
            if connection is None:
                connection = Connection(
                    identity,
                    bus=self.bus,
                    transport_factory=self._transport_factory,
                    config=self.config,
                    token_registrar=self._token_registrar,
                    sleep=self._sleep,
                    now_func=self._now,
                )
                self._connection = connection
                self.connections_created += 1
            if connection.is_ready:
                return connection
            attempt = connection.start()

        return await self._wait_ready(connection, attempt)

    async def _wait_ready(self, connection: Connection, attempt: asyncio.Task) -> Connection:
        # asyncio.wait leaves the shared attempt running on timeout and does not
        # raise when another caller's identity switch cancels it.
        done, _ = await asyncio.wait({attempt}, timeout=self.config.acquire_timeout_s)
        if not done:
            logger.warning(
                "connection for %s not ready after %.1fs; returning it in state %s",
                connection.identity,
                self.config.acquire_timeout_s,
                connection.state.value,
            )
            return connection
        if attempt.cancelled():
            logger.warning("connection attempt for %s was superseded", connection.identity)
            return connection
        exc = attempt.exception()
        if isinstance(exc, AuthenticationError):
            if self._connection is connection:
                self._connection = None
            raise exc
        if isinstance(exc, TransportError):
            logger.warning("connection for %s unavailable: %s", connection.identity, exc)
        elif exc is not None:
            raise exc
        return connection

    async def release(self, identity: str | None = None) -> None:
        async with self._lock:
            connection = self._connection
            if connection is None:
                return
            if identity is not None and connection.identity != identity:
                return
            self._connection = None
            await connection.terminate(announce=True)

    async def send(self, event_name: str, body: Dict[str, Any]) -> bool:
        connection = self._connection
        if connection is None:
            logger.warning("dropping %s: no connection acquired", event_name)
            return False
        return await connection.send(event_name, body)

    def post(self, event_name: str, body: Dict[str, Any]) -> asyncio.Task | None:
        connection = self._connection
        if connection is None:
            logger.warning("dropping %s: no connection acquired", event_name)
            return None
        return connection.post(event_name, body)
