"""
订阅回调包装

- ListenerBuilder: listen_on_path(...).when(event).call(callback)
- 回调在 try/except 中执行
- 返回 awaitable 的回调以 Task 调度, 失败在 done callback 中收集

回调错误统一包装为 CallbackError 并交给诊断 sink, 不会传播到后端的事件分发。
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Set

from .. import metrics
from ..core.exceptions import CallbackError
from .base import AbstractReference, EventKind, ListenerEvent

logger = logging.getLogger(__name__)


ErrorSink = Callable[[CallbackError], None]


def log_callback_error(error: CallbackError) -> None:
    """默认诊断 sink: 记录日志并计数"""
    metrics.record_callback_error(error.event_kind)
    exc_info = error.error if isinstance(error.error, BaseException) else None
    logger.error(
        f"Listener callback error for {error.event_kind} (path={error.path}): {error.message}",
        exc_info=exc_info,
    )


class GuardedCallback:
    """
    回调包装: 异常被捕获并报告

    回调返回 awaitable (async def, 返回协程的 lambda, async __call__ 对象等) 时,
    以 Task 调度, 失败在 done callback 中报告。
    """

    def __init__(self, callback: Callable[[ListenerEvent], Any], event_kind: str, path: str, sink: ErrorSink):
        self.callback = callback
        self.event_kind = event_kind
        self.path = path
        self.sink = sink
        self._tasks: Set[asyncio.Future] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def report(self, error: Any) -> None:
        self.sink(CallbackError(error, event_kind=self.event_kind, path=self.path))

    def __call__(self, event: ListenerEvent) -> None:
        try:
            result = self.callback(event)
        except Exception as e:
            self.report(e)
            return
        if inspect.isawaitable(result):
            self._track(result)

    def _track(self, awaitable: Any) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except Exception as e:
            self.report(e)
            return
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            self.report(error)


class ListenerCall:
    """第二阶段: call(callback) 执行实际挂载"""

    def __init__(
        self,
        reference: AbstractReference,
        event_kind: str,
        attach: Callable[[AbstractReference, str, GuardedCallback], None],
        sink: ErrorSink,
    ):
        self.reference = reference
        self.event_kind = event_kind
        self._attach = attach
        self._sink = sink

    def call(self, callback: Callable[[ListenerEvent], Any]) -> GuardedCallback:
        guarded = GuardedCallback(callback, self.event_kind, self.reference.path, self._sink)
        self._attach(self.reference, self.event_kind, guarded)
        return guarded


class ListenerBuilder:
    """第一阶段: when(event_kind) 选择事件类型"""

    def __init__(
        self,
        reference: AbstractReference,
        attach: Callable[[AbstractReference, str, GuardedCallback], None],
        sink: ErrorSink,
    ):
        self.reference = reference
        self._attach = attach
        self._sink = sink

    def when(self, event_kind: Any) -> ListenerCall:
        if isinstance(event_kind, EventKind):
            event_kind = event_kind.value
        return ListenerCall(self.reference, str(event_kind), self._attach, self._sink)
