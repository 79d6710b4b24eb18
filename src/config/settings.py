import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from errors import ConfigError
from logger import logger
from utils import parse_hhmm
load_dotenv()

__all__ = [
    "ENABLE_TELEGRAM_BOT_POLLING", "TELEGRAM_BOT_TOKEN",
    "DB_PATH", "LOG_FILE", "LOG_LEVEL",
    "REFERENCE_TIMEZONE", "SCHEDULER_TICK_SECONDS",
    "DEFAULT_DIGEST_TIME", "DIGEST_TOLERANCE_MINUTES",
    "EXPIRED_REMINDER_INTERVAL_MINUTES", "SEND_TIMEOUT_SECONDS",
    "ADMIN_HTTP_HOST", "ADMIN_HTTP_PORT", "ADMIN_AUTH_TOKEN",
    "validate_settings",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name} 非法: {raw!r}, 已回退到 {default}")
        return default


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name} 非法: {raw!r}, 已回退到 {default}")
        return default


# Telegram Bot
ENABLE_TELEGRAM_BOT_POLLING = _parse_bool("ENABLE_TELEGRAM_BOT_POLLING", True)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")

# 存储与日志
DB_PATH = os.getenv("DB_PATH", "data/dishwatch.db")
LOG_FILE = os.getenv("LOG_FILE", "logs/dishwatch.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "TRACE").strip().upper()

# 调度器
# 所有“今天”“几点”的判断都以该时区为准, 数据库中一律存 UTC
REFERENCE_TIMEZONE = os.getenv("REFERENCE_TIMEZONE", "Europe/Moscow")
SCHEDULER_TICK_SECONDS = _parse_int("SCHEDULER_TICK_SECONDS", 60)
DEFAULT_DIGEST_TIME = os.getenv("DEFAULT_DIGEST_TIME", "10:00")
DIGEST_TOLERANCE_MINUTES = _parse_int("DIGEST_TOLERANCE_MINUTES", 15)
EXPIRED_REMINDER_INTERVAL_MINUTES = _parse_int("EXPIRED_REMINDER_INTERVAL_MINUTES", 60)
SEND_TIMEOUT_SECONDS = _parse_float("SEND_TIMEOUT_SECONDS", 10.0)

# Admin API
ADMIN_HTTP_HOST = os.getenv("ADMIN_HTTP_HOST", "127.0.0.1")
ADMIN_HTTP_PORT = _parse_int("ADMIN_HTTP_PORT", int(os.getenv("PORT", "4000")))
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN", "")


def validate_settings() -> None:
    """启动时校验配置, 任何问题都视为致命错误"""
    # 即使关闭了 polling, 通知仍然需要通过 Bot 发送
    if TELEGRAM_BOT_TOKEN == "":
        raise ConfigError("TELEGRAM_BOT_TOKEN 未设置")

    try:
        ZoneInfo(REFERENCE_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"REFERENCE_TIMEZONE 非法: {REFERENCE_TIMEZONE}") from e

    try:
        parse_hhmm(DEFAULT_DIGEST_TIME)
    except ValueError as e:
        raise ConfigError(f"DEFAULT_DIGEST_TIME 非法: {DEFAULT_DIGEST_TIME}, 格式应为 HH:MM") from e

    if SCHEDULER_TICK_SECONDS <= 0:
        raise ConfigError(f"SCHEDULER_TICK_SECONDS 必须为正数: {SCHEDULER_TICK_SECONDS}")

    # 窗口必须在一天之内, 否则汇总永远不会到点或者全天都到点
    if not 0 < DIGEST_TOLERANCE_MINUTES < 24 * 60:
        raise ConfigError(f"DIGEST_TOLERANCE_MINUTES 必须在 (0, 1440) 之间: {DIGEST_TOLERANCE_MINUTES}")

    if EXPIRED_REMINDER_INTERVAL_MINUTES <= 0:
        raise ConfigError(f"EXPIRED_REMINDER_INTERVAL_MINUTES 必须为正数: {EXPIRED_REMINDER_INTERVAL_MINUTES}")

    if SEND_TIMEOUT_SECONDS <= 0:
        raise ConfigError(f"SEND_TIMEOUT_SECONDS 必须为正数: {SEND_TIMEOUT_SECONDS}")

    if not ADMIN_AUTH_TOKEN:
        logger.warning("未配置 ADMIN_AUTH_TOKEN，管理 API 将不可访问")
