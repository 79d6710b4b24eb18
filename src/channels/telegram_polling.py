import asyncio
import datetime
import re

import telegram
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, ReplyKeyboardMarkup
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from channels.base import Dispatcher
from config.settings import REFERENCE_TIMEZONE, TELEGRAM_BOT_TOKEN
from core.acknowledge import QUICK_DURATIONS_HOURS, TEST_DURATION, register_dish, write_off_dish
from core.messages import render_active_list, render_written_off_list
from core.preferences import DEFAULT_DIGEST_TIME
from datamodel import *
from errors import DispatchError
from logger import logger
from utils import format_hhmm, format_local_min, now_utc, parse_hhmm
import storage.dish as dish_storage
import storage.user as user_storage
import storage.user_settings as user_settings_storage

__all__ = ["TelegramDispatcher", "build_application", "run_polling"]

MENU_ADD = "➕ 添加菜品"
MENU_LIST = "📦 菜品列表"
MENU_WRITTEN_OFF = "🗑 已写销菜品"

_PIN_PATTERN = re.compile(r"^\d{4}$")


class TelegramDispatcher(Dispatcher):
    def __init__(self, bot: telegram.Bot) -> None:
        self.bot = bot

    async def send(self, chat_id: int, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=chat_id, text=text)
        except telegram.error.TelegramError as e:
            raise DispatchError(chat_id, str(e)) from e


def _main_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup([[MENU_ADD], [MENU_LIST, MENU_WRITTEN_OFF]], resize_keyboard=True)


def _duration_keyboard() -> InlineKeyboardMarkup:
    rows = [[InlineKeyboardButton(f"{hours} 小时", callback_data=f"dur_{hours}")] for hours in QUICK_DURATIONS_HOURS]
    rows.append([InlineKeyboardButton("🧪 测试 (1 分钟)", callback_data="dur_test")])
    return InlineKeyboardMarkup(rows)


def _write_off_keyboard(dishes: list[Dish]) -> InlineKeyboardMarkup | None:
    if not dishes:
        return None
    rows = []
    for d in dishes:
        label = d.name if len(d.name) <= 20 else d.name[:17] + "..."
        rows.append([InlineKeyboardButton(f"❌ {label} 写销", callback_data=f"rm_{d.dish_id}")])
    return InlineKeyboardMarkup(rows)


def _session(context: ContextTypes.DEFAULT_TYPE) -> ChatSession:
    session = context.chat_data.get("session")
    if session is None:
        session = ChatSession()
        context.chat_data["session"] = session
    return session


async def cmd_start(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_id = update.effective_chat.id
    logger.info(f"收到 /start 命令来自 chat_id: {chat_id}")
    session = _session(context)
    if await user_storage.is_authorized(chat_id):
        session.reset()
        await update.message.reply_text("✅ 已登录。", reply_markup=_main_menu())
        return

    session.reset()
    session.step = "user_name"
    await update.message.reply_text("请输入你的名字:")


async def cmd_digest(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/digest 查看每日汇总时间, /digest HH:MM 修改"""
    chat_id = update.effective_chat.id
    if not await user_storage.is_authorized(chat_id):
        await update.message.reply_text("请先发送 /start")
        return

    if not context.args:
        current = await user_settings_storage.get_digest_time(chat_id) or DEFAULT_DIGEST_TIME
        await update.message.reply_text(f"每日汇总时间: {format_hhmm(current)} ({REFERENCE_TIMEZONE})")
        return

    try:
        value = parse_hhmm(context.args[0])
    except ValueError:
        await update.message.reply_text("时间格式应为 HH:MM, 例如 /digest 09:30")
        return
    await user_settings_storage.set_digest_time(chat_id, value)
    await update.message.reply_text(f"✅ 每日汇总时间已设置为 {format_hhmm(value)}")


async def process_message(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.message.text:
        return
    chat_id = update.effective_chat.id
    text = update.message.text.strip()
    session = _session(context)
    logger.debug(f"chat_id: {chat_id} step={session.step} 消息内容: {text}")

    # 注册
    if session.step == "user_name":
        session.pending_user_name = text
        session.step = "pin"
        await update.message.reply_text("请输入 PIN (4 位数字):")
        return

    if session.step == "pin":
        if not _PIN_PATTERN.fullmatch(text):
            await update.message.reply_text("PIN 必须是 4 位数字:")
            return
        await user_storage.create_user_if_not_exists(chat_id, session.pending_user_name, text)
        session.reset()
        await update.message.reply_text("✅ 注册完成!", reply_markup=_main_menu())
        return

    if not await user_storage.is_authorized(chat_id):
        await update.message.reply_text("请先发送 /start")
        return

    # 添加菜品 -> 输入名称
    if session.step == "dish_name" and text not in (MENU_ADD, MENU_LIST, MENU_WRITTEN_OFF):
        if not text:
            await update.message.reply_text("菜品名称不能为空, 请重新输入:")
            return
        if len(text) > dish_storage.MAX_NAME_LENGTH:
            await update.message.reply_text(f"菜品名称不能超过 {dish_storage.MAX_NAME_LENGTH} 个字符, 请重新输入:")
            return
        session.pending_dish_name = text
        session.step = "dish_duration"
        await update.message.reply_text("请选择保质时长:", reply_markup=_duration_keyboard())
        return

    if text == MENU_ADD:
        session.reset()
        session.recent_names = await dish_storage.list_recent_names(chat_id)
        if session.recent_names:
            rows = [
                [InlineKeyboardButton(name, callback_data=f"dish_{idx}")]
                for idx, name in enumerate(session.recent_names)
            ]
            rows.append([InlineKeyboardButton("➕ 新菜品", callback_data="dish_new")])
            await update.message.reply_text("选择菜品或添加新的:", reply_markup=InlineKeyboardMarkup(rows))
        else:
            session.step = "dish_name"
            await update.message.reply_text("请输入菜品名称:")
        return

    if text == MENU_LIST:
        dishes = await dish_storage.list_active_by_chat(chat_id)
        await update.message.reply_text(
            render_active_list(dishes, now_utc(), REFERENCE_TIMEZONE),
            reply_markup=_write_off_keyboard(dishes) or _main_menu(),
        )
        return

    if text == MENU_WRITTEN_OFF:
        dishes = await dish_storage.list_written_off_by_chat(chat_id)
        await update.message.reply_text(render_written_off_list(dishes, REFERENCE_TIMEZONE), reply_markup=_main_menu())
        return

    await update.message.reply_text("请使用菜单操作。", reply_markup=_main_menu())


async def on_dish_chosen(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    session = _session(context)
    key = query.data.removeprefix("dish_")
    await query.answer()

    if key == "new":
        session.step = "dish_name"
        await query.edit_message_text("请输入菜品名称:")
        return

    try:
        name = session.recent_names[int(key)]
    except (ValueError, IndexError):
        await query.edit_message_text("菜品列表已过期, 请重新选择。")
        return
    session.pending_dish_name = name
    session.step = "dish_duration"
    await query.edit_message_text("请选择保质时长:", reply_markup=_duration_keyboard())


async def on_duration_chosen(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    chat_id = update.effective_chat.id
    session = _session(context)
    if session.step != "dish_duration" or not session.pending_dish_name:
        await query.answer("❌ 未找到菜品名称")
        return

    key = query.data.removeprefix("dur_")
    if key == "test":
        duration = TEST_DURATION
    elif key.isdigit() and int(key) in QUICK_DURATIONS_HOURS:
        duration = datetime.timedelta(hours=int(key))
    else:
        await query.answer("❌ 无效的时长")
        return

    dish = await register_dish(chat_id, session.pending_dish_name, duration)
    session.reset()
    await query.answer("✅ 完成")
    await query.edit_message_text(
        f"✅ 菜品 \"{dish.name}\" 已添加!\n保质至 {format_local_min(dish.expires_at, REFERENCE_TIMEZONE)}"
    )
    await context.bot.send_message(chat_id=chat_id, text="菜品已添加!", reply_markup=_main_menu())


async def on_write_off(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    chat_id = update.effective_chat.id
    try:
        dish_id = int(query.data.removeprefix("rm_"))
    except ValueError:
        await query.answer("❌ 无效的菜品")
        return

    remaining = await write_off_dish(dish_id, chat_id)
    await query.answer("✅ 已写销")
    await query.edit_message_text(
        "✅ 菜品已写销。\n\n" + render_active_list(remaining, now_utc(), REFERENCE_TIMEZONE),
        reply_markup=_write_off_keyboard(remaining),
    )


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """处理 telegram 库中发生的错误"""
    logger.error(f"Telegram 错误: {context.error}", exc_info=context.error)


def bot_error_callback(error: telegram.error.TelegramError) -> None:
    if isinstance(error, telegram.error.NetworkError):
        logger.warning(f"Telegram Bot 网络错误: {error}")
    else:
        logger.error(f"Telegram Bot 发生预期外的错误: {error}", exc_info=error)


def build_application(token: str = TELEGRAM_BOT_TOKEN) -> Application:
    app = ApplicationBuilder().token(token).build()

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("digest", cmd_digest))
    app.add_handler(CallbackQueryHandler(on_dish_chosen, pattern=r"^dish_"))
    app.add_handler(CallbackQueryHandler(on_duration_chosen, pattern=r"^dur_"))
    app.add_handler(CallbackQueryHandler(on_write_off, pattern=r"^rm_"))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, process_message))
    app.add_error_handler(error_handler)
    return app


async def run_polling(app: Application, shutdown_event: asyncio.Event) -> None:
    """app 需要事先 initialize(), 退出时只 stop, shutdown 由 main 负责"""
    try:
        await app.updater.start_polling(
            poll_interval=0.5,
            timeout=15,  # 长轮询
            bootstrap_retries=-1,
            drop_pending_updates=False,  # 保留下线期间的消息
            error_callback=bot_error_callback,
        )
        await app.start()
        logger.info("Telegram Bot Polling 已启动")

        await shutdown_event.wait()
    finally:
        logger.info("关闭 Telegram Bot Polling...")
        if app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
