"""
Firelink

实时数据库连接生命周期与订阅管理。
"""

__version__ = "1.0.0"
__author__ = "Firelink Team"

# Lazy imports to avoid circular dependencies
def __getattr__(name):
    if name == "connection":
        from . import connection
        return connection
    elif name == "core":
        from . import core
        return core
    elif name == "FirebaseService":
        from .connection import FirebaseService
        return FirebaseService
    elif name == "MemoryBackend":
        from .connection import MemoryBackend
        return MemoryBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    "__version__",
    "connection",
    "core",
    "FirebaseService",
    "MemoryBackend",
]
