from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import aiohttp
from aiohttp import WSMsgType

from .errors import TransportError

logger = logging.getLogger(__name__)

FrameCallback = Callable[[Any], None]
CloseCallback = Callable[[Optional[Exception]], None]


class Transport:
    """One physical socket. A fresh instance is created for every (re)connect."""

    def __init__(self) -> None:
        self._on_frame: FrameCallback | None = None
        self._on_close: CloseCallback | None = None

    def bind(self, on_frame: FrameCallback, on_close: CloseCallback) -> None:
        self._on_frame = on_frame
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    async def open(self) -> None:
        raise NotImplementedError

    async def send(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    def _deliver(self, payload: Any) -> None:
        if self._on_frame is not None:
            self._on_frame(payload)

    def _lost(self, exc: Optional[Exception]) -> None:
        callback, self._on_close = self._on_close, None
        if callback is not None:
            callback(exc)


class WebSocketTransport(Transport):
    """JSON-over-WebSocket transport on an aiohttp client session."""

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        heartbeat_s: float | None = 30.0,
        max_msg_size: int = 1_048_576,
        headers: Dict[str, str] | None = None,
    ) -> None:
        super().__init__()
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._heartbeat_s = heartbeat_s
        self._max_msg_size = max_msg_size
        self._headers = headers or {}
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._closing = False

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.url,
                heartbeat=self._heartbeat_s,
                max_msg_size=self._max_msg_size,
                headers=self._headers,
            )
        except (aiohttp.ClientError, OSError) as exc:
            await self._close_session()
            raise TransportError(f"connect to {self.url} failed: {exc}") from exc
        self._closing = False
        self._reader_task = asyncio.create_task(self._reader())

    async def send(self, payload: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError("socket is not open")
        try:
            await ws.send_json(payload)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        await self._close_session()

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            session, self._session = self._session, None
            await session.close()

    async def _reader(self) -> None:
        ws = self._ws
        error: Optional[Exception] = None
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        payload = msg.json()
                    except ValueError:
                        logger.warning("dropping non-JSON frame from %s", self.url)
                        continue
                    if isinstance(payload, dict) and payload.get("t") == "ping":
                        await ws.send_json({"v": 1, "t": "pong", "id": payload.get("id")})
                        continue
                    self._deliver(payload)
                elif msg.type == WSMsgType.ERROR:
                    error = TransportError(f"socket error: {ws.exception()}")
                    break
        except asyncio.CancelledError:
            return
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            error = TransportError(str(exc))
        if self._closing:
            return
        if error is None:
            error = TransportError(f"socket closed by peer (code={ws.close_code})")
        self._lost(error)
