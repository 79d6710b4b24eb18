from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    started_at: float


class ShutdownRequest(BaseModel):
    reason: str = Field(default="manual")


class KindStatsOut(BaseModel):
    sent: int = 0
    errors: int = 0
    malformed: int = 0


class TickResponse(BaseModel):
    ok: bool
    started_at: str
    duration_ms: float
    skipped: bool
    results: dict[str, KindStatsOut]


class DishOut(BaseModel):
    dish_id: int
    chat_id: int | None
    name: str
    status: str
    created_at_utc: str | None
    expires_at_utc: str | None
    notified_daily: bool
    notified_one_hour: bool
    last_reminder_at_utc: str | None = None
    removed_at_utc: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "DishOut":
        return cls(
            **{
                **row,
                "notified_daily": bool(row["notified_daily"]),
                "notified_one_hour": bool(row["notified_one_hour"]),
            }
        )
