from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


@dataclass(eq=False)
class Subscription:
    event_name: str
    handler: Handler
    owner: Any = field(default=None, repr=False)
    _bus: "EventBus | None" = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._bus is not None

    def deliver(self, payload: Any) -> None:
        self.handler(payload)

    def cancel(self) -> None:
        """Detach from the bus; safe to call any number of times."""

        bus, self._bus = self._bus, None
        if bus is not None:
            bus._detach(self)


class EventBus:
    """Named-channel multiplexer shared by every consumer of one connection.

    Channels are keyed by event name only, so the registrations survive any
    number of reconnects of the underlying transport.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def on(self, event_name: str, handler: Handler, *, owner: Any = None) -> Subscription:
        """Register ``handler`` for ``event_name``.

        Registration is idempotent per owner: the same handler registered again
        by the same owner returns the existing handle, while another owner gets
        a handle of its own.
        """

        for existing in self._subscriptions.get(event_name, []):
            if existing.handler == handler and existing.owner is owner:
                return existing
        subscription = Subscription(event_name=event_name, handler=handler, owner=owner, _bus=self)
        self._subscriptions.setdefault(event_name, []).append(subscription)
        return subscription

    def off(self, event_name: str, handler: Handler, *, owner: Any = None) -> None:
        for existing in list(self._subscriptions.get(event_name, [])):
            if existing.handler == handler and existing.owner is owner:
                existing.cancel()

    def emit(self, event_name: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every current handler in registration order.

        Returns the number of handlers invoked. A failing handler is logged and
        skipped; it never prevents delivery to the handlers after it.
        """

        delivered = 0
        for subscription in list(self._subscriptions.get(event_name, [])):
            if not subscription.active:
                continue
            try:
                subscription.deliver(payload)
            except Exception:
                logger.exception("handler for %s failed", event_name)
            delivered += 1
        return delivered

    def handler_count(self, event_name: str) -> int:
        return len(self._subscriptions.get(event_name, []))

    def _detach(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.event_name)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.event_name, None)


class SubscriptionGroup:
    """The handles owned by one consumer (a screen, a hook), released together."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._subscriptions: List[Subscription] = []

    def on(self, event_name: str, handler: Handler) -> Subscription:
        subscription = self._bus.on(event_name, handler, owner=self)
        if subscription not in self._subscriptions:
            self._subscriptions.append(subscription)
        return subscription

    def __len__(self) -> int:
        return sum(1 for sub in self._subscriptions if sub.active)

    def close(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()

    def __enter__(self) -> "SubscriptionGroup":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
