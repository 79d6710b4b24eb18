from __future__ import annotations

from typing import Any

import aiosqlite
from fastapi import HTTPException

import storage.db_config as db_config


def ensure_conn() -> None:
    if db_config.conn is None:
        raise HTTPException(status_code=503, detail="数据库尚未就绪")


async def fetch_all(sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    ensure_conn()
    rows: list[dict[str, Any]] = []
    try:
        async with db_config.conn.execute(sql, params) as cursor:
            col_names = [c[0] for c in cursor.description]
            async for row in cursor:
                rows.append({col_names[i]: row[i] for i in range(len(col_names))})
    except aiosqlite.Error as e:
        raise HTTPException(status_code=503, detail=f"数据库查询失败: {e}") from e
    return rows


async def fetch_one(sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
    rows = await fetch_all(sql, params)
    return rows[0] if rows else None
