"""
同步公共工具：同步时间窗口、平台时间串解析、金额解析、邮箱校验。
"""
import re
from datetime import datetime, timezone, timedelta
from typing import Any

# 平台对邮箱做基础格式校验，这里保持同等宽松
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sync_date_windows(
    lookback_days: int = 7,
    window_days: int = 1,
    now: datetime | None = None,
) -> list[tuple[datetime, datetime]]:
    """
    将 [now - lookback_days, now] 按 window_days 切成若干连续窗口，按时间从早到晚返回。
    lookback_days <= 0 时返回空列表。
    """
    if lookback_days <= 0:
        return []
    window_days = max(1, window_days)
    end = now or utcnow()
    start = end - timedelta(days=lookback_days)
    windows: list[tuple[datetime, datetime]] = []
    cursor = start
    while cursor < end:
        upper = min(cursor + timedelta(days=window_days), end)
        windows.append((cursor, upper))
        cursor = upper
    return windows


def format_api_ts(dt: datetime) -> str:
    """转为 WooCommerce after/before 参数格式（UTC，ISO8601）。"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def parse_iso_ts(s: Any) -> datetime | None:
    """
    解析平台 ISO 时间串为带时区的 datetime；无时区的按 UTC 处理。
    已是 datetime 的直接补时区返回，无法解析返回 None。
    """
    if isinstance(s, datetime):
        return s if s.tzinfo else s.replace(tzinfo=timezone.utc)
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(str(s).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_amount(value: Any) -> float:
    """平台金额多为字符串，如 "120.00"；空值或非法值按 0 处理。"""
    if value is None or (isinstance(value, str) and not value.strip()):
        return 0.0
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return 0.0


def amounts_differ(a: float | None, b: float | None, epsilon: float = 0.01) -> bool:
    """金额比较，差值超过 epsilon 视为不同。"""
    return abs((a or 0.0) - (b or 0.0)) > epsilon


def is_valid_email(email: str | None) -> bool:
    if not email:
        return False
    return bool(_EMAIL_RE.match(email.strip()))
