from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

__all__ = ["Clock", "now_utc", "to_utc_str", "parse_utc_str", "to_reference_local",
           "local_day_start_utc", "parse_hhmm", "format_hhmm", "format_local_min", "format_time_until"]

# 返回带 UTC 时区的当前时间; 调度与写销逻辑都通过它取时间, 测试中替换为固定值
Clock = Callable[[], datetime]

_STORAGE_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_utc() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_str(dt: datetime) -> str:
    """转换为数据库存储格式: UTC 'YYYY-MM-DD HH:MM:SS'"""
    return _as_utc(dt).strftime(_STORAGE_FORMAT)


def parse_utc_str(raw: Optional[str]) -> Optional[datetime]:
    """解析数据库中的 UTC 时间字符串, 空值或格式错误时返回 None"""
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return datetime.strptime(str(raw).strip(), _STORAGE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def to_reference_local(dt: datetime, tz: str) -> datetime:
    return _as_utc(dt).astimezone(ZoneInfo(tz))


def local_day_start_utc(now: datetime, tz: str) -> datetime:
    """参考时区下“今天 00:00”对应的 UTC 时间"""
    local_now = to_reference_local(now, tz)
    local_midnight = datetime.combine(local_now.date(), time(0, 0), tzinfo=ZoneInfo(tz))
    return local_midnight.astimezone(timezone.utc)


def parse_hhmm(raw: str) -> time:
    """'HH:MM' -> time, 格式错误时抛出 ValueError"""
    parts = raw.strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"时间格式应为 HH:MM: {raw!r}")
    return time(int(parts[0]), int(parts[1]))


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def format_local_min(dt: datetime, tz: str) -> str:
    return to_reference_local(dt, tz).strftime("%d.%m %H:%M")


def format_time_until(expires_at: datetime, now: datetime) -> str:
    diff = _as_utc(expires_at) - _as_utc(now)
    if diff <= timedelta(0):
        return "已过期"

    total_minutes = int(diff.total_seconds() // 60)
    days, rest = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)

    parts = []
    if days > 0:
        parts.append(f"{days} 天")
    if hours > 0:
        parts.append(f"{hours} 小时")
    if minutes > 0 and days == 0:
        parts.append(f"{minutes} 分钟")
    if not parts:
        return "不到 1 分钟"
    return f"还剩 {' '.join(parts)}"
