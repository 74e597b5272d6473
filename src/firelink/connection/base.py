"""
后端会话基类

提供实时数据库后端的抽象接口 (会话 / 引用) 和通用数据结构。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union
import logging

logger = logging.getLogger(__name__)


# Firebase "使用服务器时钟" 哨兵值, 在写入提交时被替换为服务器时间戳 (毫秒)
SERVER_TIMESTAMP: Dict[str, str] = {".sv": "timestamp"}


class ConnectionState(Enum):
    """服务实例连接状态"""
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TERMINATED = "terminated"


class EventKind(str, Enum):
    """订阅事件类型"""
    VALUE = "value"
    CHILD_ADDED = "child_added"
    CHILD_CHANGED = "child_changed"
    CHILD_REMOVED = "child_removed"


@dataclass(frozen=True)
class QueryOptions:
    """
    查询修饰 (排序 / 起始过滤)

    字段为 None 表示不应用该过滤。
    """
    order_by: Optional[str] = None
    start_at: Any = None

    @classmethod
    def coerce(cls, options: Union["QueryOptions", Mapping[str, Any], None]) -> "QueryOptions":
        """接受 QueryOptions、dict (snake_case 或 camelCase) 或 None"""
        if options is None:
            return cls()
        if isinstance(options, QueryOptions):
            return options
        return cls(
            order_by=options.get("order_by", options.get("orderBy")),
            start_at=options.get("start_at", options.get("startAt")),
        )

    def apply(self, reference: "AbstractReference") -> "AbstractReference":
        """将修饰应用到引用上, 返回新的引用"""
        if self.order_by is not None:
            reference = reference.order_by_child(self.order_by)
        if self.start_at is not None:
            reference = reference.start_at(self.start_at)
        return reference


@dataclass(frozen=True)
class ListenerEvent:
    """回调收到的事件 (reference 可继续用于 listen_on_reference)"""
    key: Optional[str]
    value: Any
    reference: "AbstractReference"


# 后端投递给订阅 handler 的签名
SnapshotHandler = Callable[[ListenerEvent], None]


def sort_key(value: Any) -> Tuple[int, Any]:
    """
    Firebase 排序规则

    null < false < true < 数字 < 字符串 < 对象
    """
    if value is None:
        return (0, 0)
    if value is False:
        return (1, 0)
    if value is True:
        return (2, 0)
    if isinstance(value, (int, float)):
        return (3, value)
    if isinstance(value, str):
        return (4, value)
    return (5, 0)


def matches_query(key: Optional[str], value: Any, order_by: Optional[str], start_at: Any) -> bool:
    """事件是否满足 start_at 过滤 (按 order_by 子字段, 未指定时按 key)"""
    if start_at is None:
        return True
    if order_by is not None:
        ordered = value.get(order_by) if isinstance(value, dict) else None
    else:
        ordered = key
    return sort_key(ordered) >= sort_key(start_at)


def split_path(path: Optional[str]) -> list:
    """'/a/b/' -> ['a', 'b']"""
    return [part for part in (path or "").split("/") if part]


class AbstractReference(ABC):
    """
    数据树中的一个位置 (可带排序 / 过滤修饰)

    提供:
    - 查询修饰
    - 订阅 / 取消订阅
    - 单次读 / 写
    """

    @property
    @abstractmethod
    def path(self) -> str:
        """规范化路径"""
        pass

    @property
    def key(self) -> Optional[str]:
        """路径最后一段, 根节点为 None"""
        parts = split_path(self.path)
        return parts[-1] if parts else None

    @abstractmethod
    def order_by_child(self, field_name: str) -> "AbstractReference":
        """按子字段排序"""
        pass

    @abstractmethod
    def start_at(self, value: Any) -> "AbstractReference":
        """过滤到当前排序下 >= value 的条目"""
        pass

    @abstractmethod
    def subscribe(self, event_kind: str, handler: SnapshotHandler) -> None:
        """挂载事件 handler"""
        pass

    @abstractmethod
    def unsubscribe(self) -> None:
        """卸载本引用上的全部 handler (重复调用为 no-op)"""
        pass

    @abstractmethod
    async def read_once(self) -> Any:
        """单次读取"""
        pass

    @abstractmethod
    async def write(self, value: Any) -> None:
        """写入 (SERVER_TIMESTAMP 在提交时被物化)"""
        pass


class AbstractSession(ABC):
    """后端会话 (由单个服务实例独占)"""

    @abstractmethod
    async def authenticate(self, token: Any) -> None:
        """使用 token 认证"""
        pass

    @abstractmethod
    def reference(self, path: str) -> AbstractReference:
        """解析路径为引用"""
        pass

    @abstractmethod
    async def go_online(self) -> Any:
        """恢复 / 保活"""
        pass

    @abstractmethod
    def go_offline(self) -> None:
        """断开网络连接"""
        pass

    @abstractmethod
    async def destroy(self) -> Any:
        """销毁会话 (不可逆)"""
        pass


class AbstractBackend(ABC):
    """后端工厂"""

    name: str = "unknown"

    @abstractmethod
    def initialize(self, config: Optional[Dict[str, Any]], identity: str) -> AbstractSession:
        """为 identity 创建新会话"""
        pass
