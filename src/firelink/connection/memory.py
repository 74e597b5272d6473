"""
In-memory realtime database backend.

Implements the backend contract over a nested dict tree shared by every
session created from the same backend. Used by the test-suite, for local
development, and by tooling that should run without network access.

Server pushes are simulated with ``MemoryBackend.emit``.
"""

import asyncio
import copy
import logging
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.exceptions import AuthenticationError, FirelinkError
from .base import (
    SERVER_TIMESTAMP,
    AbstractBackend,
    AbstractReference,
    AbstractSession,
    EventKind,
    ListenerEvent,
    SnapshotHandler,
    matches_query,
    sort_key,
    split_path,
)

logger = logging.getLogger(__name__)


def normalize_path(path: Optional[str]) -> str:
    return "/" + "/".join(split_path(path))


def join_path(path: str, key: str) -> str:
    return normalize_path(f"{path}/{key}")


class MemoryReference(AbstractReference):
    """A location in a MemoryBackend tree, optionally ordered/filtered."""

    def __init__(self, session: "MemorySession", path: str, order_by: Optional[str] = None, start_value: Any = None):
        self.session = session
        self._path = normalize_path(path)
        self.order_by = order_by
        self.start_value = start_value
        self._registrations: List[Tuple[str, SnapshotHandler]] = []

    @property
    def path(self) -> str:
        return self._path

    @property
    def listener_count(self) -> int:
        return len(self._registrations)

    def order_by_child(self, field_name: str) -> "MemoryReference":
        return MemoryReference(self.session, self._path, field_name, self.start_value)

    def start_at(self, value: Any) -> "MemoryReference":
        return MemoryReference(self.session, self._path, self.order_by, value)

    def subscribe(self, event_kind: str, handler: SnapshotHandler) -> None:
        self.session.backend._register(self, event_kind, handler)
        self._registrations.append((event_kind, handler))

    def unsubscribe(self) -> None:
        for event_kind, handler in self._registrations:
            self.session.backend._unregister(self, event_kind, handler)
        self._registrations.clear()

    def accepts(self, key: Optional[str], value: Any) -> bool:
        return matches_query(key, value, self.order_by, self.start_value)

    async def read_once(self) -> Any:
        await asyncio.sleep(0)
        value = self.session.backend.get(self._path)
        if not isinstance(value, dict) or (self.order_by is None and self.start_value is None):
            return value

        children = [(k, v) for k, v in value.items() if self.accepts(k, v)]
        if self.order_by is not None:
            children.sort(key=lambda kv: (sort_key(kv[1].get(self.order_by) if isinstance(kv[1], dict) else None), kv[0]))
        else:
            children.sort(key=lambda kv: kv[0])
        return dict(children)

    async def write(self, value: Any) -> None:
        await asyncio.sleep(0)
        stored = self.session.backend.set(self._path, value)
        self.session.backend._notify(self._path, EventKind.VALUE.value, stored)

    def __repr__(self) -> str:
        return f"MemoryReference({self._path!r}, order_by={self.order_by!r}, start_at={self.start_value!r})"


class MemorySession(AbstractSession):
    """A session bound to one MemoryBackend; records every lifecycle call."""

    def __init__(self, backend: "MemoryBackend", config: Dict[str, Any], identity: str):
        self.backend = backend
        self.config = config
        self.identity = identity

        self.authenticated = False
        self.online = False
        self.destroyed = False

        self.auth_tokens: List[Any] = []
        self.go_online_calls = 0
        self.go_offline_calls = 0
        self.destroy_calls = 0

        # values handed back by go_online() / destroy()
        self.online_result: Any = None
        self.destroy_result: Any = None

    def _ensure_alive(self) -> None:
        if self.destroyed:
            raise FirelinkError(f"Session {self.identity} has been destroyed", code="SESSION_DESTROYED")

    async def authenticate(self, token: Any) -> None:
        self._ensure_alive()
        await asyncio.sleep(0)
        self.auth_tokens.append(token)
        valid = self.backend.valid_tokens
        if valid is not None and token not in valid:
            raise AuthenticationError("Invalid custom token", backend=self.backend.name)
        self.authenticated = True
        self.online = True

    def reference(self, path: str) -> MemoryReference:
        self._ensure_alive()
        return MemoryReference(self, path)

    async def go_online(self) -> Any:
        self._ensure_alive()
        self.go_online_calls += 1
        self.online = True
        return self.online_result

    def go_offline(self) -> None:
        self.go_offline_calls += 1
        self.online = False

    async def destroy(self) -> Any:
        self.destroy_calls += 1
        self.destroyed = True
        self.online = False
        return self.destroy_result


class MemoryBackend(AbstractBackend):
    """
    Shared in-memory tree plus listener registry.

    Args:
        data: initial tree contents
        clock: returns server time in epoch milliseconds (materializes SERVER_TIMESTAMP)
        valid_tokens: when given, authenticate() rejects any other token
    """

    name = "memory"

    def __init__(
        self,
        data: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], Any]] = None,
        valid_tokens: Optional[Iterable[Any]] = None,
    ):
        self.data: Dict[str, Any] = copy.deepcopy(data) if data else {}
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.valid_tokens = set(valid_tokens) if valid_tokens is not None else None

        self.initialize_count = 0
        self.sessions: List[MemorySession] = []
        self._handlers: Dict[Tuple[str, str], List[Tuple[MemoryReference, SnapshotHandler]]] = {}

    def initialize(self, config: Optional[Dict[str, Any]], identity: str) -> MemorySession:
        self.initialize_count += 1
        session = MemorySession(self, dict(config or {}), identity)
        self.sessions.append(session)
        logger.debug(f"memory: Initialized session {identity}")
        return session

    # ============ tree ============

    def get(self, path: str) -> Any:
        node: Any = self.data
        for part in split_path(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def set(self, path: str, value: Any) -> Any:
        """Store value at path (None deletes); returns the materialized value."""
        value = self._materialize(value)
        parts = split_path(path)
        if not parts:
            self.data = copy.deepcopy(value) if isinstance(value, dict) else {}
            return value

        node = self.data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child

        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = copy.deepcopy(value)
        return value

    def _materialize(self, value: Any) -> Any:
        if value == SERVER_TIMESTAMP:
            return self.clock()
        if isinstance(value, dict):
            return {k: self._materialize(v) for k, v in value.items()}
        return value

    # ============ listeners ============

    def _register(self, reference: MemoryReference, event_kind: str, handler: SnapshotHandler) -> None:
        self._handlers.setdefault((reference.path, event_kind), []).append((reference, handler))

    def _unregister(self, reference: MemoryReference, event_kind: str, handler: SnapshotHandler) -> None:
        entries = self._handlers.get((reference.path, event_kind), [])
        self._handlers[(reference.path, event_kind)] = [
            (ref, h) for ref, h in entries if not (ref is reference and h is handler)
        ]

    def listener_count(self, path: Optional[str] = None) -> int:
        if path is None:
            return sum(len(entries) for entries in self._handlers.values())
        path = normalize_path(path)
        return sum(len(entries) for (p, _), entries in self._handlers.items() if p == path)

    def _notify(self, path: str, event_kind: str, value: Any, key: Optional[str] = None) -> int:
        path = normalize_path(path)
        if event_kind == EventKind.VALUE.value:
            key = key if key is not None else (split_path(path) or [None])[-1]
            event_path = path
        else:
            key = key if key is not None else uuid.uuid4().hex[:8]
            event_path = join_path(path, key)

        delivered = 0
        for reference, handler in list(self._handlers.get((path, event_kind), [])):
            session = reference.session
            if not session.online or session.destroyed:
                continue
            if not reference.accepts(key, value):
                continue
            handler(ListenerEvent(key=key, value=copy.deepcopy(value), reference=session.reference(event_path)))
            delivered += 1
        return delivered

    async def emit(self, path: str, event_kind: str, value: Any = None, key: Optional[str] = None) -> int:
        """
        Simulate a server push to every listener on (path, event_kind).

        Returns the number of handlers invoked. Yields to the loop afterwards
        so coroutine callbacks and their error reporting get to run.
        """
        if isinstance(event_kind, EventKind):
            event_kind = event_kind.value
        delivered = self._notify(path, event_kind, value, key)
        for _ in range(5):
            await asyncio.sleep(0)
        return delivered
