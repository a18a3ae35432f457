import asyncio
from typing import Any, Dict, List, Tuple

from chatsync import events
from chatsync.errors import TransportError
from chatsync.transport import Transport


class FakeClock:
    def __init__(self, start_ms: int = 0) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class FakeLink:
    """Records outbound events the way the connection manager would send them."""

    def __init__(self, identity: str | None = "me") -> None:
        self.identity = identity
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def send(self, event_name: str, body: Dict[str, Any]) -> bool:
        self.sent.append((event_name, body))
        return True

    def post(self, event_name: str, body: Dict[str, Any]) -> None:
        self.sent.append((event_name, body))

    def names(self) -> List[str]:
        return [name for name, _ in self.sent]


class FakeNetwork:
    """Scripted server side shared by every transport a test opens.

    ``auth_mode`` is ``"accept"``, ``"reject"`` or ``"silent"`` (never answer).
    """

    def __init__(self, auth_mode: str = "accept", fail_opens: int = 0) -> None:
        self.auth_mode = auth_mode
        self.fail_opens = fail_opens
        self.opened = 0
        self.transports: List["FakeTransport"] = []

    def factory(self, identity: str) -> "FakeTransport":
        transport = FakeTransport(self, identity)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> "FakeTransport":
        return self.transports[-1]


class FakeTransport(Transport):
    def __init__(self, network: FakeNetwork, identity: str) -> None:
        super().__init__()
        self.network = network
        self.identity = identity
        self.sent: List[Dict[str, Any]] = []
        self._open = False

    @property
    def closed(self) -> bool:
        return not self._open

    async def open(self) -> None:
        self.network.opened += 1
        if self.network.fail_opens > 0:
            self.network.fail_opens -= 1
            raise TransportError("connection refused")
        self._open = True

    async def send(self, payload: Dict[str, Any]) -> None:
        if not self._open:
            raise TransportError("socket is not open")
        self.sent.append(payload)
        if payload["t"] == events.AUTHENTICATE and self.network.auth_mode != "silent":
            accepted = self.network.auth_mode == "accept"
            asyncio.get_running_loop().call_soon(
                self.push,
                events.AUTHENTICATED,
                {
                    "identity": payload["body"]["identity"],
                    "success": accepted,
                    "message": "" if accepted else "bad token",
                },
            )

    async def close(self) -> None:
        self._open = False

    def push(self, name: str, body: Any) -> None:
        self._deliver(events.frame(name, body))

    def drop(self) -> None:
        self._open = False
        self._lost(TransportError("connection reset by peer"))

    def sent_names(self) -> List[str]:
        return [payload["t"] for payload in self.sent]


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
