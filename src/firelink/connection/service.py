"""
Firebase 服务实例

管理单个逻辑服务实例的连接生命周期:
- 状态机: UNINITIALIZED -> CONNECTING -> CONNECTED -> TERMINATED
- 并发 connect() 收敛到同一次连接尝试
- 订阅注册表, disconnect / terminate 时统一卸载
- terminate 与进行中的 connect 竞争时, terminate 总是胜出 (epoch 计数)
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Dict, FrozenSet, Mapping, Optional, Set, Union

from ..core.exceptions import LifecycleError, NotConnectedError
from .. import metrics
from .base import (
    SERVER_TIMESTAMP,
    AbstractBackend,
    AbstractReference,
    AbstractSession,
    ConnectionState,
    QueryOptions,
)
from .listener import ErrorSink, GuardedCallback, ListenerBuilder, log_callback_error

logger = logging.getLogger(__name__)


Options = Union[QueryOptions, Mapping[str, Any], None]


class FirebaseService:
    """
    实时数据库连接管理器

    每个使用方自行构造并持有实例, 实例之间没有共享的可变状态。
    同一实例不是线程安全的, 假定运行在单个 asyncio 事件循环中。
    """

    def __init__(
        self,
        backend: AbstractBackend,
        name: Optional[str] = None,
        error_sink: Optional[ErrorSink] = None,
    ):
        self.backend = backend
        self.name = name or uuid.uuid4().hex
        self.state = ConnectionState.UNINITIALIZED

        self._session: Optional[AbstractSession] = None
        self._subscriptions: Set[AbstractReference] = set()
        self._error_sink = error_sink or log_callback_error

        # terminate() 递增; connect 在每个挂起点之后比较
        self._epoch = 0
        self._connect_task: Optional[asyncio.Task] = None

    @property
    def session(self) -> Optional[AbstractSession]:
        """当前会话, 仅在 CONNECTED 状态下非 None"""
        if self.state is ConnectionState.CONNECTED:
            return self._session
        return None

    @property
    def active_subscriptions(self) -> FrozenSet[AbstractReference]:
        return frozenset(self._subscriptions)

    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    # ============ 生命周期 ============

    async def connect(self, options: Optional[Dict[str, Any]] = None, auth_token: Any = None) -> Any:
        """
        连接 (或恢复) 会话

        - 已连接: go_online() 保活, 返回其结果, 不重新初始化 / 认证
        - 未初始化: initialize + authenticate
        - 连接中: 等待同一次进行中的尝试

        Raises:
            LifecycleError: 实例已终止, 或在连接过程中被终止
        """
        if self.state is ConnectionState.TERMINATED:
            raise LifecycleError(
                "Can't connect a firebase service after termination, "
                f"please use a different instance (name={self.name})",
                name=self.name,
            )

        if self._connect_task is None or self._connect_task.done():
            # terminate() 可能在 task 首次运行前发生
            epoch = self._epoch
            self._connect_task = asyncio.ensure_future(self._connect(options, auth_token, epoch))
            self._connect_task.add_done_callback(self._clear_connect_task)

        return await asyncio.shield(self._connect_task)

    def _clear_connect_task(self, task: asyncio.Task) -> None:
        if self._connect_task is task:
            self._connect_task = None

    async def _connect(self, options: Optional[Dict[str, Any]], auth_token: Any, epoch: int) -> Any:
        self._ensure_not_terminated(epoch)
        self._update_state(ConnectionState.CONNECTING)

        if self._session is not None:
            return await self._resume(epoch)

        try:
            session = self.backend.initialize(options, self.name)
        except Exception:
            self._update_state(ConnectionState.UNINITIALIZED)
            raise

        # 认证完成前 terminate 也需要能销毁该会话
        self._session = session
        metrics.record_session_initialized(self.backend.name)

        try:
            await session.authenticate(auth_token)
        except Exception as e:
            if self._epoch == epoch:
                logger.warning(f"{self.name}: Authentication failed: {e}")
                self._session = None
                self._update_state(ConnectionState.UNINITIALIZED)
                await self._destroy_quietly(session)
            raise

        self._ensure_not_terminated(epoch)
        self._update_state(ConnectionState.CONNECTED)
        return None

    async def _resume(self, epoch: int) -> Any:
        """对已有会话执行 go_online"""
        try:
            result = await self._session.go_online()
        except Exception as e:
            if self._epoch == epoch:
                logger.warning(f"{self.name}: Resume failed: {e}")
                self._release_subscriptions()
                self._update_state(ConnectionState.UNINITIALIZED)
            raise

        self._ensure_not_terminated(epoch)
        self._update_state(ConnectionState.CONNECTED)
        return result

    def _ensure_not_terminated(self, epoch: int) -> None:
        if self._epoch != epoch:
            raise LifecycleError(
                f"Firebase service was terminated while connecting (name={self.name})",
                name=self.name,
            )

    async def _destroy_quietly(self, session: AbstractSession) -> None:
        try:
            await session.destroy()
        except Exception as e:
            logger.warning(f"{self.name}: Failed to destroy half-initialized session: {e}")

    async def disconnect(self) -> None:
        """
        断开连接

        卸载全部订阅, 会话 go_offline, 状态回到 UNINITIALIZED (可再次 connect)。
        非 CONNECTED 状态 (包括已终止) 下为 no-op。
        """
        if self.state is not ConnectionState.CONNECTED:
            logger.debug(f"{self.name}: disconnect() ignored in state {self.state.value}")
            return

        self._release_subscriptions()
        self._session.go_offline()
        self._update_state(ConnectionState.UNINITIALIZED)

    async def terminate(self) -> Any:
        """
        终止实例 (不可逆)

        执行 disconnect 的清理, 然后销毁后端会话 (至多一次)。

        Returns:
            会话 destroy() 的结果; 重复调用或从未初始化时为 None
        """
        if self.state is ConnectionState.TERMINATED:
            return None

        self._epoch += 1
        self._release_subscriptions()

        session, self._session = self._session, None
        if session is not None and self.state is not ConnectionState.UNINITIALIZED:
            session.go_offline()

        self._update_state(ConnectionState.TERMINATED)
        metrics.remove_instance(self.name)

        if session is None:
            return None

        logger.info(f"{self.name}: Destroying backend session")
        return await session.destroy()

    # ============ 订阅 ============

    def listen_on_path(self, path: str, options: Options = None) -> ListenerBuilder:
        """
        监听路径

        用法:
            service.listen_on_path("rooms/1", {"order_by": "rank"}).when("child_added").call(cb)
        """
        self._require_connected("listen_on_path", path)
        return self._listen(self._session.reference(path), options)

    def listen_on_reference(self, reference: AbstractReference, options: Options = None) -> ListenerBuilder:
        """监听已解析的引用 (例如回调事件中的 event.reference)"""
        self._require_connected("listen_on_reference", reference.path)
        return self._listen(reference, options)

    def _listen(self, reference: AbstractReference, options: Options) -> ListenerBuilder:
        reference = QueryOptions.coerce(options).apply(reference)
        return ListenerBuilder(reference, self._attach, self._error_sink)

    def _attach(self, reference: AbstractReference, event_kind: str, guarded: GuardedCallback) -> None:
        self._require_connected("listen_on_reference", reference.path)
        reference.subscribe(event_kind, guarded)
        self._subscriptions.add(reference)
        metrics.update_subscription_count(self.name, len(self._subscriptions))
        logger.debug(f"{self.name}: Listening on {reference.path} for {event_kind}")

    def _release_subscriptions(self) -> None:
        for reference in list(self._subscriptions):
            try:
                reference.unsubscribe()
            except Exception as e:
                logger.warning(f"{self.name}: Failed to detach listener on {reference.path}: {e}")
        if self._subscriptions:
            logger.debug(f"{self.name}: Detached {len(self._subscriptions)} listeners")
        self._subscriptions.clear()
        metrics.update_subscription_count(self.name, 0)

    # ============ 读取 ============

    def get_values_at_path(self, path: str) -> Awaitable[Any]:
        """单次读取路径上的值 (未连接时立即抛出 NotConnectedError)"""
        self._require_connected("get_values_at_path", path)
        return self._session.reference(path).read_once()

    def get_firebase_server_time(self, path: str) -> Awaitable[Any]:
        """
        获取服务器时间

        服务器时间只在写入提交时物化: 先写入 SERVER_TIMESTAMP 哨兵, 再读回。
        """
        self._require_connected("get_firebase_server_time", path)
        return self._write_and_read_server_time(self._session.reference(path))

    async def _write_and_read_server_time(self, reference: AbstractReference) -> Any:
        await reference.write(SERVER_TIMESTAMP)
        return await reference.read_once()

    # ============ 内部 ============

    def _require_connected(self, operation: str, path: Optional[str]) -> None:
        if self.state is not ConnectionState.CONNECTED:
            raise NotConnectedError(operation, path)

    def _update_state(self, new_state: ConnectionState) -> None:
        """更新连接状态"""
        old_state = self.state
        self.state = new_state
        metrics.update_connection_status(self.name, new_state is ConnectionState.CONNECTED)
        logger.info(f"{self.name}: State changed {old_state.value} -> {new_state.value}")

    def __repr__(self) -> str:
        return f"FirebaseService(name={self.name!r}, state={self.state.value})"
