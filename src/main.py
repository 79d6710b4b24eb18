from logger import setup_logging, logger
from config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    console_level="INFO",
)

import asyncio
import signal
import sys
from datetime import timedelta

from admin.http_server import main_loop as admin_http_main
from channels.telegram_polling import TelegramDispatcher, build_application, run_polling
from errors import ConfigError
from utils import parse_hhmm
from world.expiry_scheduler import ExpiryScheduler, configure_scheduler
import metrics  # 注册指标事件处理器
import storage.db_config as db_config
import storage.dish as dish_storage

shutdown_event = asyncio.Event()

def signal_handler(sig, frame):
    """处理 SIGINT / SIGTERM 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


async def main():
    try:
        validate_settings()
    except ConfigError as e:
        logger.critical(f"配置错误, 无法启动: {e}")
        sys.exit(1)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await db_config.init_db(DB_PATH)

    # expires_at 为空的菜品不会出现在任何候选查询中, 启动时统一告警一次
    malformed = await dish_storage.query_malformed()
    if malformed:
        logger.warning(f"发现 {len(malformed)} 个缺少过期时间的菜品, 不会被自动通知: {[d.dish_id for d in malformed]}")

    app = build_application()
    await app.initialize()

    scheduler = ExpiryScheduler(
        TelegramDispatcher(app.bot),
        reference_tz=REFERENCE_TIMEZONE,
        default_digest_time=parse_hhmm(DEFAULT_DIGEST_TIME),
        digest_tolerance=timedelta(minutes=DIGEST_TOLERANCE_MINUTES),
        repeat_interval=timedelta(minutes=EXPIRED_REMINDER_INTERVAL_MINUTES),
        send_timeout=SEND_TIMEOUT_SECONDS,
        tick_interval=SCHEDULER_TICK_SECONDS,
    )
    configure_scheduler(scheduler)

    try:
        tasks = [
            scheduler.main_loop(shutdown_event),
            admin_http_main(shutdown_event),
        ]

        if ENABLE_TELEGRAM_BOT_POLLING:
            tasks.append(run_polling(app, shutdown_event))
        else:
            logger.warning("Telegram Bot Polling 已禁用, 仅发送通知")

        await asyncio.gather(*tasks)
    finally:
        logger.info("关闭 Dishwatch...")
        await app.shutdown()

        logger.info("关闭数据库连接...")
        await db_config.close_db()
        logger.info("Dishwatch 已关闭")


if __name__ == "__main__":
    logger.info("启动 Dishwatch...")
    asyncio.run(main())
