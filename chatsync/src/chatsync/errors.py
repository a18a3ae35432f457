from __future__ import annotations


class SyncError(Exception):
    pass


class TransportError(SyncError):
    """The underlying socket failed; recovered by reconnect, never raised to consumers."""


class AuthenticationError(SyncError):
    def __init__(self, identity: str | None, message: str = "identity rejected") -> None:
        self.identity = identity
        super().__init__(f"{message} (identity={identity!r})")


class Unauthenticated(AuthenticationError):
    def __init__(self, message: str = "no known session") -> None:
        super().__init__(None, message)


class MalformedEventError(SyncError):
    def __init__(self, event_name: str, reason: str) -> None:
        self.event_name = event_name
        self.reason = reason
        super().__init__(f"malformed {event_name} event: {reason}")


class CallError(SyncError):
    """A local call action that the current call state does not allow."""
