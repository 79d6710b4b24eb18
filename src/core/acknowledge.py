"""用户手动操作: 登记菜品与写销菜品

写销会立即生效 (不等下一个 tick), 并返回该会话最新的未写销列表供通道层渲染
连续两次点击同一个写销按钮是安全的: 第二次看到的已经是 removed, 直接视为成功
"""

from datetime import timedelta

from datamodel import *
from events import bus, E
from logger import logger
from utils import Clock, now_utc
import storage.dish as dish_storage
import core.state_machine as state_machine

__all__ = ["QUICK_DURATIONS_HOURS", "TEST_DURATION", "register_dish", "write_off_dish"]

QUICK_DURATIONS_HOURS = (24, 48, 72)
TEST_DURATION = timedelta(minutes=1)


async def register_dish(chat_id: int, name: str, duration: timedelta, clock: Clock = now_utc) -> Dish:
    """登记新菜品, expires_at = 当前时间 + duration"""
    if duration <= timedelta(0):
        raise ValueError(f"保质时长必须为正数: {duration}")
    now = clock()
    dish = await dish_storage.create_dish(chat_id, name, expires_at=now + duration, created_at=now)
    logger.info(f"chat_id={chat_id} 登记菜品: dish_id={dish.dish_id}, name={dish.name}")
    bus.emit(E.DISH_CREATED, dish)
    return dish


async def write_off_dish(dish_id: int, chat_id: int, clock: Clock = now_utc) -> list[Dish]:
    """写销菜品并返回该会话剩余的 active 菜品"""
    dish = await dish_storage.get_dish(dish_id, chat_id=chat_id)
    if dish is None:
        logger.warning(f"chat_id={chat_id} 尝试写销不存在或不属于自己的菜品: dish_id={dish_id}")
    else:
        acknowledged = state_machine.acknowledge(dish, clock())
        if acknowledged is dish:
            logger.debug(f"菜品已处于写销状态, 忽略重复操作: dish_id={dish_id}")
        else:
            affected = await dish_storage.mark_removed(dish_id, chat_id, acknowledged.removed_at)
            if affected:
                logger.info(f"chat_id={chat_id} 写销菜品: dish_id={dish_id}, name={dish.name}, 原状态={dish.status.value}")
                bus.emit(E.DISH_WRITTEN_OFF, acknowledged)
            else:
                # 并发写销, 另一次操作已经完成
                logger.debug(f"菜品已被并发写销: dish_id={dish_id}")

    return await dish_storage.list_active_by_chat(chat_id)
