"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

调度器与写销处理器只负责 emit, 指标统计等旁路逻辑通过 bus.on 订阅
处理器可以是同步函数, 也可以是协程 (协程需要在运行中的事件循环里 emit)
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Any, Callable

from logger import logger

Handler = Callable[..., Any]

# 事件名集中定义
class E:
    DISH_CREATED = "dish.created"
    DISH_WRITTEN_OFF = "dish.written_off"
    NOTIFICATION_SENT = "notification.sent"
    NOTIFICATION_FAILED = "notification.failed"
    TICK_COMPLETED = "scheduler.tick_completed"


class Bus(AsyncIOEventEmitter):
    def on(self, event: str) -> Callable[[Handler], Handler]:
        """注册事件处理器装饰器"""
        def decorator(handler: Handler) -> Handler:
            logger.debug(f"注册事件处理器: {event} -> {handler.__name__}")
            super(Bus, self).on(event, handler)
            return handler

        return decorator


bus = Bus()

__all__ = ["bus", "E"]
