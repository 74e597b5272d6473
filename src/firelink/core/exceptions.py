"""
Firelink 自定义异常

提供层次化的异常类，用于精确的错误处理。
"""

from typing import Any, Optional


class FirelinkError(Exception):
    """Firelink 基础异常类"""

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


def path_hint(path: Optional[str]) -> str:
    """路径的最后一段 (用于诊断信息，不泄露完整路径)"""
    return (path or "").rstrip("/").split("/")[-1]


class NotConnectedError(FirelinkError):
    """在非 CONNECTED 状态下执行读/写/订阅"""

    def __init__(self, operation: str, path: Optional[str] = None):
        self.operation = operation
        self.path_hint = path_hint(path)
        super().__init__(
            f"FirebaseService.{operation}: not connected! (path={self.path_hint})",
            code="NOT_CONNECTED",
        )


class LifecycleError(FirelinkError):
    """终止后的实例不可再连接"""

    def __init__(self, message: str, name: str = ""):
        super().__init__(message, code="LIFECYCLE_ERROR")
        self.name = name


class AuthenticationError(FirelinkError):
    """认证错误 (凭证无效 / token 被拒绝)"""

    def __init__(self, message: str, backend: str = ""):
        super().__init__(message, code="AUTH_ERROR")
        self.backend = backend


class CallbackError(FirelinkError):
    """
    订阅回调抛出的错误

    只会被转发到诊断 sink，不会向任何调用方抛出。
    """

    def __init__(self, error: Any, event_kind: str = "", path: str = ""):
        if isinstance(error, BaseException):
            message = str(error) or error.__class__.__name__
        else:
            message = repr(error)
        super().__init__(message, code="CALLBACK_ERROR")
        self.error = error
        self.event_kind = event_kind
        self.path = path
