import asyncio
import json
from typing import Any, Dict

from aiohttp import WSMsgType, web

REJECTED_IDENTITIES = {"mallory"}


async def _ws_handler(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    app = request.app
    app["sockets"].append(ws)

    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            try:
                payload = json.loads(msg.data)
            except ValueError:
                continue
            await app["received"].put(payload)
            if payload.get("t") == "authenticate":
                identity = payload.get("body", {}).get("identity")
                await ws.send_json(
                    {
                        "v": 1,
                        "t": "authenticated",
                        "body": {
                            "identity": identity,
                            "success": identity not in REJECTED_IDENTITIES,
                            "message": "unknown identity" if identity in REJECTED_IDENTITIES else "",
                        },
                    }
                )
    finally:
        if ws in app["sockets"]:
            app["sockets"].remove(ws)
    return ws


def create_app() -> web.Application:
    """A minimal gateway: answers the handshake and records every frame it receives."""

    app = web.Application()
    app["received"] = asyncio.Queue()
    app["sockets"] = []
    app.router.add_get("/v1/ws", _ws_handler)
    return app


async def push(app: web.Application, name: str, body: Dict[str, Any]) -> None:
    for ws in list(app["sockets"]):
        await ws.send_json({"v": 1, "t": name, "body": body})


async def next_frame(app: web.Application, name: str, timeout: float = 2.0) -> Dict[str, Any]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise asyncio.TimeoutError(f"no {name} frame received")
        payload = await asyncio.wait_for(app["received"].get(), remaining)
        if payload.get("t") == name:
            return payload
