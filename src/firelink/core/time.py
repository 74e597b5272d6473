import os
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def resolve_tz(name: Optional[str] = None):
    """显示用时区: 参数 > FIRELINK_TZ > UTC (未知时区回退 UTC)"""
    tz_name = (name or os.getenv("FIRELINK_TZ") or "").strip()
    if not tz_name or tz_name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def format_server_time(ms: float, fmt: str = "%Y-%m-%d %H:%M:%S", tz_name: Optional[str] = None) -> str:
    """Format a Firebase server timestamp (epoch milliseconds)."""
    return datetime.fromtimestamp(float(ms) / 1000.0, tz=resolve_tz(tz_name)).strftime(fmt)
