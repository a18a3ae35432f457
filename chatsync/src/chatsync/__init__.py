"""Real-time synchronization core for a chat client."""

from .bus import EventBus, Subscription, SubscriptionGroup
from .calls import CallSession, CallSignalingCoordinator, CallState
from .cli import main, simulate
from .client import SyncClient
from .config import SyncConfig, load_config
from .connection import Connection, ConnectionManager, ConnectionState
from .errors import (
    AuthenticationError,
    CallError,
    MalformedEventError,
    SyncError,
    TransportError,
    Unauthenticated,
)
from .messages import ChatListView, ChatSummary, MessageSynchronizer
from .pins import PinnedMessage, PinnedMessageBoard
from .presence import PresenceTracker, TypingSender

__all__ = [
    "AuthenticationError",
    "CallError",
    "CallSession",
    "CallSignalingCoordinator",
    "CallState",
    "ChatListView",
    "ChatSummary",
    "Connection",
    "ConnectionManager",
    "ConnectionState",
    "EventBus",
    "MalformedEventError",
    "MessageSynchronizer",
    "PinnedMessage",
    "PinnedMessageBoard",
    "PresenceTracker",
    "Subscription",
    "SubscriptionGroup",
    "SyncClient",
    "SyncConfig",
    "SyncError",
    "TransportError",
    "TypingSender",
    "Unauthenticated",
    "load_config",
    "main",
    "simulate",
]
