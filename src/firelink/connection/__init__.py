"""Connection layer module."""

from .base import (
    SERVER_TIMESTAMP,
    ConnectionState,
    EventKind,
    QueryOptions,
    ListenerEvent,
    AbstractBackend,
    AbstractSession,
    AbstractReference,
)
from .listener import ListenerBuilder, ListenerCall
from .memory import MemoryBackend
from .service import FirebaseService

__all__ = [
    "SERVER_TIMESTAMP",
    "ConnectionState",
    "EventKind",
    "QueryOptions",
    "ListenerEvent",
    "AbstractBackend",
    "AbstractSession",
    "AbstractReference",
    "ListenerBuilder",
    "ListenerCall",
    "MemoryBackend",
    "FirebaseService",
]
