"""菜品通知状态机

# 状态
active -> expired  (调度器自动, expires_at <= now)
active -> removed  (用户手动写销)
expired -> removed (用户手动写销)
removed 为终态, 不会再发出任何通知

# 通知标记
notified_daily / notified_one_hour 只会从 False 变成 True, 永不回退
过期后的重复提醒不用布尔标记, 而是用 last_reminder_at 做节流

本模块只做判断, 不访问存储; 真正的写入由调度器在投递成功之后完成,
并且存储层的 UPDATE 语句自带同样的守卫条件
"""

from dataclasses import replace
from datetime import datetime, timedelta

from datamodel import *
from errors import MalformedItem

__all__ = [
    "DAY", "ONE_HOUR_LEAD_MIN", "ONE_HOUR_LEAD_MAX", "DEFAULT_REPEAT_INTERVAL",
    "evaluate_daily_digest", "evaluate_one_hour_warning", "evaluate_expiry",
    "expiry_transition", "acknowledge", "ensure_transition",
]

DAY = timedelta(hours=24)
# tick 间隔可能大于一分钟, 所以用 [55, 65] 分钟的窗口而不是精确的 60 分钟
ONE_HOUR_LEAD_MIN = timedelta(minutes=55)
ONE_HOUR_LEAD_MAX = timedelta(minutes=65)
DEFAULT_REPEAT_INTERVAL = timedelta(hours=1)

_ALLOWED_TRANSITIONS: dict[DishStatus, set[DishStatus]] = {
    DishStatus.ACTIVE: {DishStatus.ACTIVE, DishStatus.EXPIRED, DishStatus.REMOVED},
    DishStatus.EXPIRED: {DishStatus.EXPIRED, DishStatus.REMOVED},
    DishStatus.REMOVED: {DishStatus.REMOVED},
}


def _require_expires_at(dish: Dish) -> datetime:
    if dish.expires_at is None or dish.expires_at.tzinfo is None:
        raise MalformedItem(dish.dish_id)
    return dish.expires_at


def ensure_transition(current: DishStatus, target: DishStatus) -> None:
    """校验状态迁移是否合法, 相同状态视为幂等调用"""
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise ValueError(f"非法的状态迁移: {current.value} -> {target.value}")


def evaluate_daily_digest(dish: Dish, day_start: datetime) -> Decision:
    """day_start 为参考时区“今天 00:00”对应的 UTC 时间"""
    expires_at = _require_expires_at(dish)
    if dish.status != DishStatus.ACTIVE or dish.notified_daily:
        return Decision.SKIP
    if day_start <= expires_at < day_start + DAY:
        return Decision.PERMIT
    return Decision.SKIP


def evaluate_one_hour_warning(
    dish: Dish,
    now: datetime,
    lead_min: timedelta = ONE_HOUR_LEAD_MIN,
    lead_max: timedelta = ONE_HOUR_LEAD_MAX,
) -> Decision:
    expires_at = _require_expires_at(dish)
    if dish.status != DishStatus.ACTIVE or dish.notified_one_hour:
        return Decision.SKIP
    if now + lead_min <= expires_at <= now + lead_max:
        return Decision.PERMIT
    return Decision.SKIP


def evaluate_expiry(dish: Dish, now: datetime, repeat_interval: timedelta = DEFAULT_REPEAT_INTERVAL) -> Decision:
    expires_at = _require_expires_at(dish)
    if dish.status == DishStatus.REMOVED or expires_at > now:
        return Decision.SKIP
    if dish.status == DishStatus.ACTIVE:
        return Decision.PERMIT

    # 已过期但未写销: 按间隔重复提醒
    if dish.last_reminder_at is None or now - dish.last_reminder_at >= repeat_interval:
        return Decision.PERMIT
    return Decision.SKIP


def expiry_transition(dish: Dish) -> DishStatus:
    """过期提醒投递成功后菜品应处于的状态"""
    ensure_transition(dish.status, DishStatus.EXPIRED)
    return DishStatus.EXPIRED


def acknowledge(dish: Dish, now: datetime) -> Dish:
    """写销: 任意状态 -> removed; 已写销时原样返回"""
    if dish.status == DishStatus.REMOVED:
        return dish
    ensure_transition(dish.status, DishStatus.REMOVED)
    return replace(dish, status=DishStatus.REMOVED, removed_at=now)
