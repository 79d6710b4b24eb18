import aiosqlite

import storage.db_config as db_config
from datamodel import *
from errors import StoreQueryError
from logger import logger
from utils import parse_utc_str

def _ensure_conn():
    if db_config.conn is None:
        raise StoreQueryError("数据库未初始化，请先调用 init_db()")

async def create_user_if_not_exists(chat_id: int, user_name: str, pin: str) -> None:
    """如果用户不存在则创建新用户"""
    _ensure_conn()
    try:
        async with db_config.conn.execute("SELECT COUNT(1) FROM users WHERE chat_id = ?", (chat_id,)) as cursor:
            row = await cursor.fetchone()
            exists = row[0] if row else 0
        if not exists:
            logger.info(f"创建新用户, chat_id: {chat_id}, user_name: {user_name}")
            await db_config.conn.execute(
                "INSERT INTO users (chat_id, user_name, pin) VALUES (?, ?, ?)", (chat_id, user_name, pin)
            )
            await db_config.conn.commit()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"创建用户失败: {e}") from e

async def get_user(chat_id: int) -> UserInfo | None:
    """通过 chat_id 获取用户信息"""
    _ensure_conn()
    try:
        async with db_config.conn.execute(
            "SELECT chat_id, user_name, pin, created_at_utc FROM users WHERE chat_id = ?", (chat_id,)
        ) as cursor:
            row = await cursor.fetchone()
    except aiosqlite.Error as e:
        raise StoreQueryError(f"查询用户失败: {e}") from e
    if row:
        return UserInfo(
            chat_id=row[0],
            user_name=row[1],
            pin=row[2],
            created_at=parse_utc_str(row[3]),
        )
    else:
        return None

async def is_authorized(chat_id: int) -> bool:
    return await get_user(chat_id) is not None
