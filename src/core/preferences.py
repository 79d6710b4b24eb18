"""每日汇总时间

每个接收者独立决定自己的汇总时间: 有配置用配置, 没有配置用默认时间 (10:00)
不存在“全局回退模式”, 因此某个用户新增配置不会影响其他用户, 也不会出现同一 tick 重复发送
"""

from datetime import datetime, time, timedelta

__all__ = ["DEFAULT_DIGEST_TIME", "DEFAULT_DIGEST_TOLERANCE", "resolve_digest_time", "is_digest_due"]

DEFAULT_DIGEST_TIME = time(10, 0)
DEFAULT_DIGEST_TOLERANCE = timedelta(minutes=15)


def resolve_digest_time(preferences: dict[int, time], chat_id: int, default: time = DEFAULT_DIGEST_TIME) -> time:
    return preferences.get(chat_id, default)


def _minute_of_day(value: time) -> int:
    return value.hour * 60 + value.minute


def is_digest_due(digest_time: time, now_local: datetime, tolerance: timedelta = DEFAULT_DIGEST_TOLERANCE) -> bool:
    """now_local 落在 [digest_time, digest_time + tolerance) 内时返回 True, 可跨越午夜"""
    tolerance_minutes = int(tolerance.total_seconds() // 60)
    elapsed = (_minute_of_day(now_local.time()) - _minute_of_day(digest_time)) % (24 * 60)
    return elapsed < tolerance_minutes
