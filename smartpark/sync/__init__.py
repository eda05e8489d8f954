"""Client-side synchronization with the Smart Park relay.

Provides the sync manager that merges relay updates into a local document,
the reconnection supervisor, and the same-device fallback store used while
the relay is unreachable.
"""

from .client import ConnectionState, SyncManager
from .protocol import Message, MessageType, ProtocolError
from .storage import FallbackStore, PersistenceError, StorageEvent
from .supervisor import ExponentialBackoff, FixedDelay, ReconnectionSupervisor

__all__ = [
    "ConnectionState",
    "ExponentialBackoff",
    "FallbackStore",
    "FixedDelay",
    "Message",
    "MessageType",
    "PersistenceError",
    "ProtocolError",
    "ReconnectionSupervisor",
    "StorageEvent",
    "SyncManager",
]
