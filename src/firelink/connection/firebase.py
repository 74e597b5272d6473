"""
Firebase Realtime Database 后端 (firebase-admin)

- authenticate: service account 凭证 -> initialize_app(name=实例名)
- 读写通过 asyncio.to_thread 执行 (SDK 为阻塞 REST 调用)
- 订阅使用 Reference.listen (SSE 线程), 事件经 call_soon_threadsafe 回到事件循环
- put / patch 事件在本地缓存上转换为 value / child_* 事件
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, db
from google.auth import exceptions as google_auth_exceptions

from ..core.exceptions import AuthenticationError, FirelinkError
from .base import (
    AbstractBackend,
    AbstractReference,
    AbstractSession,
    EventKind,
    ListenerEvent,
    SnapshotHandler,
    matches_query,
    split_path,
)

logger = logging.getLogger(__name__)


def normalize_path(path: Optional[str]) -> str:
    return "/" + "/".join(split_path(path))


# ============ put / patch 事件转换 ============

def _put(node: Any, parts: List[str], value: Any) -> Any:
    """在 parts 位置写入 value, 返回新树 (空对象视为 None)"""
    if not parts:
        return copy.deepcopy(value) if value != {} else None
    node = dict(node) if isinstance(node, dict) else {}
    child = _put(node.get(parts[0]), parts[1:], value)
    if child is None or child == {}:
        node.pop(parts[0], None)
    else:
        node[parts[0]] = child
    return node or None


def apply_event(cache: Any, event_type: str, path: str, data: Any) -> Any:
    """将 SSE 事件应用到本地缓存"""
    parts = split_path(path)
    if event_type == "put":
        return _put(cache, parts, data)
    if event_type == "patch":
        for key, value in (data or {}).items():
            cache = _put(cache, parts + split_path(key), value)
        return cache
    return cache


def child_changes(before: Any, after: Any) -> Dict[str, List[Tuple[str, Any]]]:
    """比较前后两棵树的一级子节点"""
    before = before if isinstance(before, dict) else {}
    after = after if isinstance(after, dict) else {}
    return {
        EventKind.CHILD_ADDED.value: [(k, v) for k, v in after.items() if k not in before],
        EventKind.CHILD_CHANGED.value: [(k, v) for k, v in after.items() if k in before and before[k] != v],
        EventKind.CHILD_REMOVED.value: [(k, v) for k, v in before.items() if k not in after],
    }


class _Listener:
    """单个 Reference.listen 注册"""

    def __init__(
        self,
        reference: "FirebaseAdminReference",
        event_kind: str,
        handler: SnapshotHandler,
        loop: asyncio.AbstractEventLoop,
    ):
        self.reference = reference
        self.event_kind = event_kind
        self.handler = handler
        self.loop = loop
        self.closed = False
        self._cache: Any = None
        self._primed = False
        self._registration = None

    def start(self) -> None:
        self._registration = self.reference._db_ref().listen(self._on_thread_event)

    def close(self) -> None:
        self.closed = True
        if self._registration is not None:
            self._registration.close()
            self._registration = None

    def _on_thread_event(self, event) -> None:
        # SSE 线程
        if self.closed:
            return
        try:
            self.loop.call_soon_threadsafe(self._on_event, event.event_type, event.path, event.data)
        except RuntimeError:
            logger.debug(f"Event loop closed, dropping event on {self.reference.path}")

    def _on_event(self, event_type: str, path: str, data: Any) -> None:
        if self.closed:
            return
        before = self._cache
        self._cache = apply_event(before, event_type, path, data)

        ref = self.reference
        session = ref.session
        if self.event_kind == EventKind.VALUE.value:
            if self._primed and before == self._cache:
                return
            self._primed = True
            value = self._cache
            if isinstance(value, dict) and (ref.order_by is not None or ref.start_value is not None):
                value = {k: v for k, v in value.items() if ref.accepts(k, v)}
            self.handler(ListenerEvent(key=ref.key, value=copy.deepcopy(value), reference=session.reference(ref.path)))
            return

        for key, value in child_changes(before, self._cache).get(self.event_kind, []):
            if not ref.accepts(key, value):
                continue
            child_ref = session.reference(f"{ref.path}/{key}")
            self.handler(ListenerEvent(key=key, value=copy.deepcopy(value), reference=child_ref))


class FirebaseAdminReference(AbstractReference):
    """db.Reference 包装, 附带排序 / 过滤修饰"""

    def __init__(self, session: "FirebaseAdminSession", path: str, order_by: Optional[str] = None, start_value: Any = None):
        self.session = session
        self._path = normalize_path(path)
        self.order_by = order_by
        self.start_value = start_value
        self._listeners: List[_Listener] = []

    @property
    def path(self) -> str:
        return self._path

    def _db_ref(self) -> db.Reference:
        return db.reference(self._path, app=self.session.app)

    def _query(self):
        ref = self._db_ref()
        if self.order_by is not None:
            query = ref.order_by_child(self.order_by)
        elif self.start_value is not None:
            query = ref.order_by_key()
        else:
            return ref
        if self.start_value is not None:
            start = self.start_value if self.order_by is not None else str(self.start_value)
            query = query.start_at(start)
        return query

    def accepts(self, key: Optional[str], value: Any) -> bool:
        return matches_query(key, value, self.order_by, self.start_value)

    def order_by_child(self, field_name: str) -> "FirebaseAdminReference":
        return FirebaseAdminReference(self.session, self._path, field_name, self.start_value)

    def start_at(self, value: Any) -> "FirebaseAdminReference":
        return FirebaseAdminReference(self.session, self._path, self.order_by, value)

    def subscribe(self, event_kind: str, handler: SnapshotHandler) -> None:
        listener = _Listener(self, event_kind, handler, asyncio.get_running_loop())
        listener.start()
        self._listeners.append(listener)

    def unsubscribe(self) -> None:
        for listener in self._listeners:
            listener.close()
        self._listeners.clear()

    async def read_once(self) -> Any:
        return await asyncio.to_thread(self._query().get)

    async def write(self, value: Any) -> None:
        await asyncio.to_thread(self._db_ref().set, value)

    def __repr__(self) -> str:
        return f"FirebaseAdminReference({self._path!r}, order_by={self.order_by!r}, start_at={self.start_value!r})"


class FirebaseAdminSession(AbstractSession):
    """以实例名命名的 firebase_admin.App"""

    def __init__(self, options: Dict[str, Any], identity: str):
        self.options = options
        self.identity = identity
        self.app: Optional[firebase_admin.App] = None
        self.online = False
        self._credential: Optional[credentials.Base] = None

    async def authenticate(self, token: Any) -> None:
        """
        使用 service account 凭证认证

        Args:
            token: service account JSON 路径 / dict, 或 credentials.Base 实例
        """
        if token is None:
            raise AuthenticationError("A service account credential is required", backend="firebase")

        try:
            credential = token if isinstance(token, credentials.Base) else credentials.Certificate(token)
        except (IOError, ValueError) as e:
            raise AuthenticationError(f"Invalid service account credential: {e}", backend="firebase") from e

        try:
            await asyncio.to_thread(credential.get_access_token)
        except google_auth_exceptions.GoogleAuthError as e:
            raise AuthenticationError(f"Credential rejected: {e}", backend="firebase") from e

        self._credential = credential
        self.app = firebase_admin.initialize_app(credential, self.options, name=self.identity)
        self.online = True
        logger.info(f"firebase: App {self.identity} initialized")

    def reference(self, path: str) -> FirebaseAdminReference:
        if self.app is None:
            raise FirelinkError(f"Session {self.identity} is not authenticated", code="NOT_AUTHENTICATED")
        return FirebaseAdminReference(self, path)

    async def go_online(self) -> Any:
        """刷新 access token 作为保活"""
        token_info = await asyncio.to_thread(self._credential.get_access_token)
        self.online = True
        return token_info

    def go_offline(self) -> None:
        self.online = False

    async def destroy(self) -> Any:
        if self.app is not None:
            firebase_admin.delete_app(self.app)
            logger.info(f"firebase: App {self.identity} deleted")
            self.app = None
        self.online = False
        return None


class FirebaseAdminBackend(AbstractBackend):
    """firebase-admin 后端工厂"""

    name = "firebase"

    def initialize(self, config: Optional[Dict[str, Any]], identity: str) -> FirebaseAdminSession:
        options = dict(config or {})
        if "databaseURL" not in options:
            raise ValueError("Firebase options must include databaseURL")
        return FirebaseAdminSession(options, identity)
