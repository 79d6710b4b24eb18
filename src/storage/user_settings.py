from datetime import time

import aiosqlite

import storage.db_config as db_config
from errors import StoreQueryError
from logger import logger
from utils import format_hhmm, parse_hhmm

__all__ = ["get_digest_time", "set_digest_time", "list_preferences"]


def _ensure_conn():
    if db_config.conn is None:
        raise StoreQueryError("数据库未初始化，请先调用 init_db()")


async def get_digest_time(chat_id: int) -> time | None:
    """该会话配置的每日汇总时间, 未配置时返回 None"""
    _ensure_conn()
    try:
        async with db_config.conn.execute(
            "SELECT daily_digest_time FROM user_settings WHERE chat_id = ?", (chat_id,)
        ) as cursor:
            row = await cursor.fetchone()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"查询用户设置失败: {e}") from e
    if row is None:
        return None
    try:
        return parse_hhmm(row[0])
    except ValueError:
        logger.warning(f"chat_id={chat_id} 的 daily_digest_time 非法: {row[0]!r}, 视为未配置")
        return None


async def set_digest_time(chat_id: int, value: time) -> None:
    _ensure_conn()
    try:
        await db_config.conn.execute(
            "INSERT INTO user_settings (chat_id, daily_digest_time, updated_at_utc) VALUES (?, ?, CURRENT_TIMESTAMP) "
            "ON CONFLICT(chat_id) DO UPDATE SET daily_digest_time = excluded.daily_digest_time, "
            "updated_at_utc = CURRENT_TIMESTAMP",
            (chat_id, format_hhmm(value)),
        )
        await db_config.conn.commit()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"保存用户设置失败: {e}") from e
    logger.info(f"chat_id={chat_id} 的每日汇总时间已设置为 {format_hhmm(value)}")


async def list_preferences() -> dict[int, time]:
    """所有已配置的每日汇总时间, 非法值会被跳过并告警"""
    _ensure_conn()
    try:
        async with db_config.conn.execute("SELECT chat_id, daily_digest_time FROM user_settings") as cursor:
            rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"查询用户设置失败: {e}") from e

    preferences: dict[int, time] = {}
    for chat_id, raw in rows:
        try:
            preferences[chat_id] = parse_hhmm(raw)
        except ValueError:
            logger.warning(f"chat_id={chat_id} 的 daily_digest_time 非法: {raw!r}, 使用默认时间")
    return preferences
