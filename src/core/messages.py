from datetime import datetime

from datamodel import *
from utils import format_local_min, format_time_until, to_reference_local

__all__ = ["MAX_MESSAGE_LENGTH", "split_message", "render_daily_digest", "render_one_hour", "render_expired",
           "render_active_list", "render_written_off_list"]

# Telegram 单条消息的字符上限
MAX_MESSAGE_LENGTH = 4096

_UNKNOWN_NAME = "未命名菜品"


def _name(dish: Dish) -> str:
    return dish.name or _UNKNOWN_NAME


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """按行把消息切成不超过 limit 的若干段, 单行超长时硬切"""
    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if not current:
            current = line
        elif len(current) + 1 + len(line) <= limit:
            current = f"{current}\n{line}"
        else:
            chunks.append(current)
            current = line
    if current or not chunks:
        chunks.append(current)
    return chunks


def render_daily_digest(dishes: list[Dish], tz: str) -> str:
    lines = ["⚠ 今天到期:"]
    for d in dishes:
        lines.append(f"• {_name(d)} (截止 {to_reference_local(d.expires_at, tz).strftime('%H:%M')})")
    return "\n".join(lines)


def render_one_hour(dishes: list[Dish]) -> str:
    lines = ["⏳ 1 小时后到期:"]
    lines += [f"• {_name(d)}" for d in dishes]
    return "\n".join(lines)


def render_expired(dishes: list[Dish]) -> str:
    return "\n".join(f"❌ 已过期: {_name(d)}, 请及时写销。" for d in dishes)


def render_active_list(dishes: list[Dish], now: datetime, tz: str) -> str:
    if not dishes:
        return "没有未写销的菜品。"
    valid = [d for d in dishes if d.expires_at is not None]
    items = [
        f"{i}. {_name(d)}\n   📅 {format_local_min(d.expires_at, tz)} · {format_time_until(d.expires_at, now)}"
        for i, d in enumerate(valid, start=1)
    ]
    return "📦 菜品列表:\n\n" + "\n\n".join(items)


def render_written_off_list(dishes: list[Dish], tz: str) -> str:
    if not dishes:
        return "没有已写销的菜品。"
    items = []
    for i, d in enumerate(dishes, start=1):
        label = "⏰ 已过期" if d.status == DishStatus.EXPIRED else "❌ 已写销"
        created = to_reference_local(d.created_at, tz).strftime("%d.%m") if d.created_at else "--.--"
        items.append(f"{i}. {_name(d)} {label} ({created})")
    return "🗑 已写销菜品:\n\n" + "\n".join(items)
