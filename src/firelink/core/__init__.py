"""Core configuration and exceptions."""

from .config import Config, FirebaseConfig, MetricsConfig, load_config
from .exceptions import (
    FirelinkError,
    NotConnectedError,
    LifecycleError,
    AuthenticationError,
    CallbackError,
)

__all__ = [
    "Config",
    "FirebaseConfig",
    "MetricsConfig",
    "load_config",
    "FirelinkError",
    "NotConnectedError",
    "LifecycleError",
    "AuthenticationError",
    "CallbackError",
]
