"""菜品存储

调度器所需的查询/更新契约都在这里, 时间统一以 UTC 'YYYY-MM-DD HH:MM:SS' 字符串存储,
因此范围比较可以直接使用字符串比较
expires_at 一旦写入便不再修改, 本模块没有任何更新 expires_at_utc 的语句
"""

from datetime import datetime
from typing import Any, Sequence

import aiosqlite

import storage.db_config as db_config
from datamodel import *
from errors import StoreQueryError
from logger import logger
from utils import parse_utc_str, to_utc_str

__all__ = [
    "MAX_NAME_LENGTH",
    "create_dish", "get_dish",
    "list_active_by_chat", "list_written_off_by_chat", "list_recent_names",
    "query_daily_candidates", "query_one_hour_candidates", "query_expiry_candidates", "query_malformed",
    "mark_notified_daily", "mark_notified_one_hour", "mark_expired", "touch_last_reminder", "mark_removed",
]

# 保证单个菜品的提醒行远小于一条消息的上限
MAX_NAME_LENGTH = 100

_DISH_COLUMNS = (
    "dish_id, chat_id, name, created_at_utc, expires_at_utc, status, "
    "notified_daily, notified_one_hour, last_reminder_at_utc, removed_at_utc"
)


def _ensure_conn():
    if db_config.conn is None:
        raise StoreQueryError("数据库未初始化，请先调用 init_db()")


def _row_to_dish(row: Sequence[Any]) -> Dish:
    return Dish(
        dish_id=row[0],
        chat_id=row[1],
        name=row[2],
        created_at=parse_utc_str(row[3]),
        expires_at=parse_utc_str(row[4]),
        status=DishStatus(row[5]),
        notified_daily=bool(row[6]),
        notified_one_hour=bool(row[7]),
        last_reminder_at=parse_utc_str(row[8]),
        removed_at=parse_utc_str(row[9]),
    )


async def _fetch_dishes(sql: str, params: tuple = ()) -> list[Dish]:
    _ensure_conn()
    try:
        async with db_config.conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"查询菜品失败: {e}") from e
    return [_row_to_dish(row) for row in rows]


async def _execute(sql: str, params: tuple = ()) -> int:
    _ensure_conn()
    try:
        async with db_config.conn.execute(sql, params) as cursor:
            affected = cursor.rowcount
        await db_config.conn.commit()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"更新菜品失败: {e}") from e
    return affected


def _placeholders(ids: Sequence[int]) -> str:
    return ", ".join("?" for _ in ids)


async def create_dish(chat_id: int, name: str, expires_at: datetime, created_at: datetime) -> Dish:
    """创建菜品, 初始状态为 active, 两个通知标记均为 False"""
    name = name.strip()
    if not name:
        raise ValueError("菜品名称不能为空")
    if len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"菜品名称过长: {len(name)} > {MAX_NAME_LENGTH}")

    _ensure_conn()
    try:
        async with db_config.conn.execute(
            "INSERT INTO dishes (chat_id, name, created_at_utc, expires_at_utc, status) VALUES (?, ?, ?, ?, ?)",
            (chat_id, name, to_utc_str(created_at), to_utc_str(expires_at), DishStatus.ACTIVE.value),
        ) as cursor:
            dish_id = cursor.lastrowid
        await db_config.conn.commit()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"创建菜品失败: {e}") from e

    logger.trace(f"创建菜品: dish_id={dish_id}, chat_id={chat_id}, name={name}, expires_at={to_utc_str(expires_at)}")
    return Dish(
        dish_id=dish_id,
        chat_id=chat_id,
        name=name,
        created_at=parse_utc_str(to_utc_str(created_at)),
        expires_at=parse_utc_str(to_utc_str(expires_at)),
    )


async def get_dish(dish_id: int, chat_id: int | None = None) -> Dish | None:
    """按 ID 获取菜品, 传入 chat_id 时只返回该会话自己的菜品"""
    if chat_id is None:
        dishes = await _fetch_dishes(f"SELECT {_DISH_COLUMNS} FROM dishes WHERE dish_id = ?", (dish_id,))
    else:
        dishes = await _fetch_dishes(
            f"SELECT {_DISH_COLUMNS} FROM dishes WHERE dish_id = ? AND chat_id = ?", (dish_id, chat_id)
        )
    return dishes[0] if dishes else None


async def list_active_by_chat(chat_id: int) -> list[Dish]:
    return await _fetch_dishes(
        f"SELECT {_DISH_COLUMNS} FROM dishes WHERE chat_id = ? AND status = 'active' ORDER BY expires_at_utc, dish_id",
        (chat_id,),
    )


async def list_written_off_by_chat(chat_id: int, limit: int = 50) -> list[Dish]:
    return await _fetch_dishes(
        f"SELECT {_DISH_COLUMNS} FROM dishes WHERE chat_id = ? AND status IN ('expired', 'removed') "
        "ORDER BY created_at_utc DESC, dish_id DESC LIMIT ?",
        (chat_id, limit),
    )


async def list_recent_names(chat_id: int, limit: int = 8) -> list[str]:
    """最近用过的菜品名称 (去重), 用于快速添加"""
    _ensure_conn()
    try:
        async with db_config.conn.execute(
            "SELECT name FROM dishes WHERE chat_id = ? GROUP BY name ORDER BY MAX(created_at_utc) DESC LIMIT ?",
            (chat_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"查询最近菜品名称失败: {e}") from e
    return [row[0] for row in rows]


async def query_daily_candidates(day_start: datetime, day_end: datetime) -> list[Dish]:
    """今天内到期且尚未发送每日汇总的菜品, 区间为 [day_start, day_end)"""
    return await _fetch_dishes(
        f"SELECT {_DISH_COLUMNS} FROM dishes WHERE status = 'active' AND notified_daily = 0 "
        "AND expires_at_utc >= ? AND expires_at_utc < ? ORDER BY chat_id, expires_at_utc",
        (to_utc_str(day_start), to_utc_str(day_end)),
    )


async def query_one_hour_candidates(window_start: datetime, window_end: datetime) -> list[Dish]:
    """到期时间落在 [window_start, window_end] 且尚未发送一小时提醒的菜品"""
    return await _fetch_dishes(
        f"SELECT {_DISH_COLUMNS} FROM dishes WHERE status = 'active' AND notified_one_hour = 0 "
        "AND expires_at_utc >= ? AND expires_at_utc <= ? ORDER BY chat_id, expires_at_utc",
        (to_utc_str(window_start), to_utc_str(window_end)),
    )


async def query_expiry_candidates(now: datetime) -> list[Dish]:
    """已到期且未写销的菜品 (active 与 expired), 重复提醒的节流由状态机负责"""
    return await _fetch_dishes(
        f"SELECT {_DISH_COLUMNS} FROM dishes WHERE status IN ('active', 'expired') "
        "AND expires_at_utc <= ? ORDER BY chat_id, expires_at_utc",
        (to_utc_str(now),),
    )


async def query_malformed() -> list[Dish]:
    """expires_at 缺失的未写销菜品, 只用于诊断"""
    return await _fetch_dishes(
        f"SELECT {_DISH_COLUMNS} FROM dishes WHERE status != 'removed' "
        "AND (expires_at_utc IS NULL OR TRIM(expires_at_utc) = '')",
    )


async def mark_notified_daily(dish_ids: Sequence[int]) -> int:
    if not dish_ids:
        return 0
    affected = await _execute(
        f"UPDATE dishes SET notified_daily = 1 WHERE notified_daily = 0 AND dish_id IN ({_placeholders(dish_ids)})",
        tuple(dish_ids),
    )
    logger.trace(f"标记每日汇总已发送: dish_ids={list(dish_ids)}, affected={affected}")
    return affected


async def mark_notified_one_hour(dish_ids: Sequence[int]) -> int:
    if not dish_ids:
        return 0
    affected = await _execute(
        f"UPDATE dishes SET notified_one_hour = 1 WHERE notified_one_hour = 0 AND dish_id IN ({_placeholders(dish_ids)})",
        tuple(dish_ids),
    )
    logger.trace(f"标记一小时提醒已发送: dish_ids={list(dish_ids)}, affected={affected}")
    return affected


async def mark_expired(dish_ids: Sequence[int], at: datetime) -> int:
    """active -> expired, 已被写销的菜品不会被覆盖"""
    if not dish_ids:
        return 0
    affected = await _execute(
        "UPDATE dishes SET status = 'expired', last_reminder_at_utc = ? "
        f"WHERE status = 'active' AND dish_id IN ({_placeholders(dish_ids)})",
        (to_utc_str(at), *dish_ids),
    )
    logger.trace(f"标记为已过期: dish_ids={list(dish_ids)}, affected={affected}")
    return affected


async def touch_last_reminder(dish_ids: Sequence[int], at: datetime) -> int:
    if not dish_ids:
        return 0
    return await _execute(
        "UPDATE dishes SET last_reminder_at_utc = ? "
        f"WHERE status = 'expired' AND dish_id IN ({_placeholders(dish_ids)})",
        (to_utc_str(at), *dish_ids),
    )


async def mark_removed(dish_id: int, chat_id: int, at: datetime) -> int:
    """写销; 对已写销的菜品重复调用不会改变 removed_at"""
    affected = await _execute(
        "UPDATE dishes SET status = 'removed', removed_at_utc = COALESCE(removed_at_utc, ?) "
        "WHERE dish_id = ? AND chat_id = ? AND status != 'removed'",
        (to_utc_str(at), dish_id, chat_id),
    )
    logger.trace(f"写销菜品: dish_id={dish_id}, chat_id={chat_id}, affected={affected}")
    return affected
