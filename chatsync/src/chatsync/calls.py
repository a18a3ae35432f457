"""Call signaling state machine.

One ``CallSession`` per call id. Transitions are driven either by local
actions (initiate, accept, reject, end) or by inbound signals, and every
move is looked up in ``TRANSITIONS``; anything not listed there is ignored.
Terminal states absorb every later signal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import events
from .bus import EventBus, SubscriptionGroup
from .clock import _now_ms
from .config import CallConfig
from .errors import CallError
from .sweeper import Sweeper

logger = logging.getLogger(__name__)

OUTGOING = "outgoing"
INCOMING = "incoming"


class CallState(str, Enum):
    IDLE = "idle"
    RINGING_OUTGOING = "ringing_outgoing"
    RINGING_INCOMING = "ringing_incoming"
    CONNECTED = "connected"
    ENDED = "ended"
    REJECTED = "rejected"
    MISSED = "missed"
    TERMINATED = "terminated"


TERMINAL_STATES = frozenset({CallState.ENDED, CallState.REJECTED, CallState.MISSED, CallState.TERMINATED})
RINGING_STATES = frozenset({CallState.RINGING_OUTGOING, CallState.RINGING_INCOMING})

# (state, trigger) -> next state. Triggers prefixed ``local_`` are user actions.
TRANSITIONS: Dict[Tuple[CallState, str], CallState] = {
    (CallState.IDLE, "local_initiate"): CallState.RINGING_OUTGOING,
    (CallState.IDLE, "incoming"): CallState.RINGING_INCOMING,
    (CallState.RINGING_OUTGOING, "accepted"): CallState.CONNECTED,
    (CallState.RINGING_OUTGOING, "rejected"): CallState.REJECTED,
    (CallState.RINGING_OUTGOING, "local_end"): CallState.ENDED,
    (CallState.RINGING_INCOMING, "local_accept"): CallState.CONNECTED,
    (CallState.RINGING_INCOMING, "local_reject"): CallState.TERMINATED,
    # The caller hung up before we answered.
    (CallState.RINGING_INCOMING, "ended"): CallState.MISSED,
    (CallState.CONNECTED, "ended"): CallState.ENDED,
    (CallState.CONNECTED, "local_end"): CallState.ENDED,
    (CallState.RINGING_OUTGOING, "missed"): CallState.MISSED,
    (CallState.RINGING_INCOMING, "missed"): CallState.MISSED,
    (CallState.RINGING_OUTGOING, "timeout"): CallState.MISSED,
    (CallState.RINGING_INCOMING, "timeout"): CallState.MISSED,
}

_SIGNAL_TRIGGERS = {
    events.CALL_ACCEPTED: "accepted",
    events.CALL_REJECTED: "rejected",
    events.CALL_ENDED: "ended",
    events.CALL_MISSED: "missed",
}


@dataclass
class CallSession:
    call_id: str
    initiator_id: str
    peer_id: str
    media: str
    direction: str
    created_ms: int
    state: CallState = CallState.IDLE
    local_muted: bool = False
    remote_muted: bool = False
    connected_ms: Optional[int] = None
    finished_ms: Optional[int] = None
    failure_reason: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def ringing(self) -> bool:
        return self.state in RINGING_STATES

    def duration_seconds(self, now_ms: int) -> int:
        if self.connected_ms is None:
            return 0
        end_ms = self.finished_ms if self.finished_ms is not None else now_ms
        return max(0, (end_ms - self.connected_ms) // 1000)


class CallSignalingCoordinator:
    def __init__(
        self,
        link: Any,
        config: CallConfig | None = None,
        *,
        bus: EventBus | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._link = link
        self.config = config or CallConfig()
        self.bus = bus
        self._now = now_func
        self._sessions: Dict[str, CallSession] = {}
        self._sweeper = Sweeper(self.sweep, self.config.sweeper_interval_seconds, name="call-sweeper")

    @property
    def identity(self) -> Optional[str]:
        return getattr(self._link, "identity", None)

    def session(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def sessions(self) -> List[CallSession]:
        return sorted(self._sessions.values(), key=lambda s: s.created_ms)

    def active(self) -> Optional[CallSession]:
        for session in self._sessions.values():
            if not session.terminal:
                return session
        return None

    # -- local actions ------------------------------------------------------

    async def initiate(self, peer_id: str, media: str = "audio") -> CallSession:
        me = self.identity
        if me is None:
            raise CallError("cannot place a call without an identity")
        if self.active() is not None:
            raise CallError("another call is in progress")
        now = self._now()
        session = CallSession(
            call_id=f"{me}_{peer_id}_{now}",
            initiator_id=me,
            peer_id=str(peer_id),
            media=media if media in ("audio", "video") else "audio",
            direction=OUTGOING,
            created_ms=now,
        )
        self._sessions[session.call_id] = session
        self._transition(session, "local_initiate")
        await self._link.send(events.CALL_INITIATE, self._body(session, media=session.media))
        return session

    async def accept(self, call_id: str) -> bool:
        session = self._require(call_id)
        if not self._local(session, "local_accept"):
            return False
        await self._link.send(events.CALL_ACCEPTED, self._body(session))
        return True

    async def reject(self, call_id: str, reason: str = "") -> bool:
        session = self._require(call_id)
        if not self._local(session, "local_reject"):
            return False
        await self._link.send(events.CALL_REJECTED, self._body(session, reason=reason))
        return True

    async def end(self, call_id: str) -> bool:
        session = self._require(call_id)
        if not self._local(session, "local_end"):
            return False
        duration = session.duration_seconds(self._now())
        await self._link.send(events.CALL_ENDED, self._body(session, duration=duration))
        return True

    async def toggle_mute(self, call_id: str) -> bool:
        """Flip the local mute flag; returns the new value."""

        session = self._require(call_id)
        if session.state != CallState.CONNECTED:
            raise CallError(f"cannot mute a call in state {session.state.value}")
        session.local_muted = not session.local_muted
        self._notify(session)
        await self._link.send(events.CALL_MUTE_TOGGLE, self._body(session, is_muted=session.local_muted))
        return session.local_muted

    def _require(self, call_id: str) -> CallSession:
        session = self._sessions.get(call_id)
        if session is None:
            raise CallError(f"unknown call {call_id!r}")
        return session

    def _local(self, session: CallSession, trigger: str) -> bool:
        if session.terminal:
            logger.debug("ignoring %s on finished call %s", trigger, session.call_id)
            return False
        if (session.state, trigger) not in TRANSITIONS:
            raise CallError(f"cannot {trigger[len('local_'):]} a call in state {session.state.value}")
        return self._transition(session, trigger)

    # -- inbound signals ----------------------------------------------------

    def handle_signal(self, signal: events.CallSignal) -> bool:
        if signal.name == events.CALL_INCOMING:
            return self._on_incoming(signal)

        session = self._match(signal)
        if session is None:
            logger.debug("no call matches %s (call_id=%s)", signal.name, signal.call_id)
            return False
        if session.terminal:
            logger.debug("ignoring %s on finished call %s", signal.name, session.call_id)
            return False

        if signal.name == events.CALL_MUTE_TOGGLE:
            if session.state != CallState.CONNECTED or signal.is_muted is None:
                return False
            if session.remote_muted == signal.is_muted:
                return False
            session.remote_muted = signal.is_muted
            self._notify(session)
            return True

        if signal.name == events.CALL_USER_OFFLINE:
            # The server pushed a notification; keep ringing until timeout.
            session.failure_reason = "peer_offline"
            self._notify(session)
            return True

        trigger = _SIGNAL_TRIGGERS.get(signal.name)
        if trigger is None:
            return False
        if signal.reason and trigger in ("rejected", "missed"):
            session.failure_reason = signal.reason
        return self._transition(session, trigger)

    def _on_incoming(self, signal: events.CallSignal) -> bool:
        me = self.identity
        caller = signal.from_user_id
        if caller is None or caller == me:
            return False
        now = self._now()
        call_id = signal.call_id or f"{caller}_{me}_{now}"
        if call_id in self._sessions:
            return False
        if self.active() is not None:
            logger.info("rejecting call %s from %s: busy", call_id, caller)
            self._link.post(
                events.CALL_REJECTED,
                {"call_id": call_id, "from_user_id": me, "to_user_id": caller, "reason": "busy"},
            )
            return False
        session = CallSession(
            call_id=call_id,
            initiator_id=caller,
            peer_id=caller,
            media=signal.media,
            direction=INCOMING,
            created_ms=now,
        )
        self._sessions[call_id] = session
        return self._transition(session, "incoming")

    def _match(self, signal: events.CallSignal) -> Optional[CallSession]:
        if signal.call_id is not None:
            session = self._sessions.get(signal.call_id)
            if session is not None:
                return session
        me = self.identity
        peers = {p for p in (signal.from_user_id, signal.to_user_id) if p is not None and p != me}
        candidates = [s for s in self._sessions.values() if s.peer_id in peers]
        if not candidates:
            return None
        live = [s for s in candidates if not s.terminal]
        return max(live or candidates, key=lambda s: s.created_ms)

    # -- timers -------------------------------------------------------------

    def sweep(self, now_ms: int | None = None) -> List[str]:
        """Time out unanswered rings and drop finished calls past the grace period.

        Returns the ids of the sessions that were garbage-collected.
        """

        now_ms = self._now() if now_ms is None else now_ms
        for session in list(self._sessions.values()):
            if session.ringing and now_ms - session.created_ms >= self.config.ring_timeout_ms:
                session.failure_reason = session.failure_reason or "timeout"
                self._transition(session, "timeout", now_ms)
                if session.direction == OUTGOING:
                    self._link.post(events.CALL_MISSED, self._body(session))

        collected: List[str] = []
        for call_id, session in list(self._sessions.items()):
            if session.terminal and now_ms - (session.finished_ms or now_ms) >= self.config.terminal_grace_ms:
                del self._sessions[call_id]
                collected.append(call_id)
        return collected

    def start_sweeper(self) -> None:
        self._sweeper.start()

    async def stop_sweeper(self) -> None:
        await self._sweeper.stop()

    # -- wiring -------------------------------------------------------------

    def attach(self, bus: EventBus) -> SubscriptionGroup:
        self.bus = bus
        group = SubscriptionGroup(bus)
        for name in events.CALL_SIGNALS:
            if name != events.CALL_INITIATE:
                group.on(name, self.handle_signal)
        group.on(events.IDENTITY_CHANGED, lambda _identity: self._sessions.clear())
        return group

    def _transition(self, session: CallSession, trigger: str, now_ms: int | None = None) -> bool:
        target = TRANSITIONS.get((session.state, trigger))
        if target is None:
            logger.debug("call %s: no transition for %s in %s", session.call_id, trigger, session.state.value)
            return False
        now_ms = self._now() if now_ms is None else now_ms
        logger.info("call %s: %s -> %s", session.call_id, session.state.value, target.value)
        session.state = target
        if target == CallState.CONNECTED:
            session.connected_ms = now_ms
        if target in TERMINAL_STATES:
            session.finished_ms = now_ms
        self._notify(session)
        return True

    def _body(self, session: CallSession, **extra: Any) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "call_id": session.call_id,
            "from_user_id": self.identity,
            "to_user_id": session.peer_id,
        }
        body.update(extra)
        return body

    def _notify(self, session: CallSession) -> None:
        if self.bus is not None:
            self.bus.emit(events.CALL_STATE_CHANGED, session)
