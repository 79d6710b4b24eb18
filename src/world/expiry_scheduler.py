"""过期通知调度器

每个 tick:
1. 只读取一次当前时间, 本 tick 内的“今天”“一小时后”都基于这个值
2. 三个互相独立的分支: 每日汇总 / 一小时提醒 / 过期提醒, 任何一个分支出错都不影响另外两个
3. 候选菜品再经过状态机校验, 按 chat_id 分组, 每个接收者每种通知只发一条合并消息
4. 投递成功后才提交标记/状态; 投递失败的接收者保持原样, 下个 tick 自动重试
5. 不同接收者的投递并发进行, 互不影响

tick 之间除了数据库没有任何状态, 因此任何一个 tick 失败或被跳过都是安全的
内部定时器与外部触发 (POST /api/v1/scheduler/tick) 走的是同一个 run_tick
"""

import asyncio
import time
from datetime import datetime, time as dtime, timedelta
from typing import Awaitable, Callable

from channels.base import Dispatcher
from core.messages import render_daily_digest, render_expired, render_one_hour, split_message
from core.preferences import DEFAULT_DIGEST_TIME, DEFAULT_DIGEST_TOLERANCE, is_digest_due, resolve_digest_time
from datamodel import *
from errors import DispatchError, MalformedItem, StoreQueryError
from events import bus, E
from logger import logger
from utils import Clock, local_day_start_utc, now_utc, to_reference_local, to_utc_str
import core.state_machine as state_machine
import storage.dish as dish_storage
import storage.user_settings as user_settings_storage

__all__ = ["ExpiryScheduler", "configure_scheduler", "require_scheduler"]

Renderer = Callable[[list[Dish]], str]
Committer = Callable[[list[Dish], datetime], Awaitable[None]]


class ExpiryScheduler:
    def __init__(
        self,
        dispatcher: Dispatcher,
        clock: Clock = now_utc,
        *,
        reference_tz: str = "Europe/Moscow",
        default_digest_time: dtime = DEFAULT_DIGEST_TIME,
        digest_tolerance: timedelta = DEFAULT_DIGEST_TOLERANCE,
        one_hour_lead_min: timedelta = state_machine.ONE_HOUR_LEAD_MIN,
        one_hour_lead_max: timedelta = state_machine.ONE_HOUR_LEAD_MAX,
        repeat_interval: timedelta = state_machine.DEFAULT_REPEAT_INTERVAL,
        send_timeout: float = 10.0,
        tick_interval: float = 60.0,
    ) -> None:
        self.dispatcher = dispatcher
        self.clock = clock
        self.reference_tz = reference_tz
        self.default_digest_time = default_digest_time
        self.digest_tolerance = digest_tolerance
        self.one_hour_lead_min = one_hour_lead_min
        self.one_hour_lead_max = one_hour_lead_max
        self.repeat_interval = repeat_interval
        self.send_timeout = send_timeout
        self.tick_interval = tick_interval

        self._tick_lock = asyncio.Lock()
        self._running = False
        self.last_tick_at: datetime | None = None
        self.last_summary: TickSummary | None = None

    def get_status(self) -> dict[str, object]:
        return {
            "running": self._running,
            "tick_in_progress": self._tick_lock.locked(),
            "tick_interval_seconds": self.tick_interval,
            "reference_timezone": self.reference_tz,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }

    async def main_loop(self, shutdown_event: asyncio.Event) -> None:
        self._running = True
        logger.info(f"过期通知调度器已启动, 间隔 {self.tick_interval} 秒, 参考时区 {self.reference_tz}")
        try:
            while not shutdown_event.is_set():
                try:
                    await self.run_tick()
                except Exception as e:
                    logger.error(f"调度器 tick 发生未处理的异常, 将在下个 tick 继续: {e}", exc_info=e)

                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=self.tick_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("过期通知调度器已关闭")

    async def run_tick(self) -> TickSummary:
        """执行一次完整的检查; 若上一个 tick 仍在运行则直接跳过"""
        if self._tick_lock.locked():
            logger.warning("上一个 tick 仍在运行, 跳过本次触发")
            summary = TickSummary(started_at=self.clock(), skipped=True)
            bus.emit(E.TICK_COMPLETED, summary)
            return summary

        async with self._tick_lock:
            return await self._run_tick_locked()

    async def _run_tick_locked(self) -> TickSummary:
        now = self.clock()
        started = time.perf_counter()
        summary = TickSummary(started_at=now)
        logger.debug(f"tick 开始: now_utc={to_utc_str(now)}, now_local={to_reference_local(now, self.reference_tz)}")

        branches = (
            (NotificationKind.DAILY, self._process_daily),
            (NotificationKind.ONE_HOUR, self._process_one_hour),
            (NotificationKind.EXPIRED, self._process_expired),
        )
        for kind, branch in branches:
            stats = summary.stats_for(kind)
            try:
                await branch(now, stats)
            except StoreQueryError as e:
                logger.error(f"[{kind.value}] 查询存储失败, 本分支跳过, 下个 tick 重试: {e}")
                stats.errors += 1
            except Exception as e:
                logger.error(f"[{kind.value}] 分支发生未处理的异常: {e}", exc_info=e)
                stats.errors += 1

        summary.duration_ms = (time.perf_counter() - started) * 1000
        self.last_tick_at = now
        self.last_summary = summary

        results = summary.to_dict()["results"]
        if any(s["sent"] or s["errors"] or s["malformed"] for s in results.values()):
            logger.info(f"tick 完成: {results}, 耗时 {summary.duration_ms:.1f} ms")
        else:
            logger.trace(f"tick 完成, 无需发送通知, 耗时 {summary.duration_ms:.1f} ms")
        bus.emit(E.TICK_COMPLETED, summary)
        return summary

    # ----------------- 三个分支 ----------------
    async def _process_daily(self, now: datetime, stats: KindStats) -> None:
        day_start = local_day_start_utc(now, self.reference_tz)
        candidates = await dish_storage.query_daily_candidates(day_start, day_start + state_machine.DAY)
        if not candidates:
            return

        permitted = self._permitted(
            NotificationKind.DAILY, candidates, lambda d: state_machine.evaluate_daily_digest(d, day_start), stats
        )
        groups = self._group_by_recipient(NotificationKind.DAILY, permitted)
        if not groups:
            return

        preferences = await user_settings_storage.list_preferences()
        now_local = to_reference_local(now, self.reference_tz)
        due_groups = {}
        for chat_id, dishes in groups.items():
            digest_time = resolve_digest_time(preferences, chat_id, self.default_digest_time)
            if is_digest_due(digest_time, now_local, self.digest_tolerance):
                due_groups[chat_id] = dishes
            else:
                logger.trace(f"[daily] chat_id={chat_id} 的汇总时间 {digest_time} 未到, 跳过 {len(dishes)} 个菜品")

        await self._dispatch_groups(
            NotificationKind.DAILY,
            due_groups,
            now,
            stats,
            lambda dishes: render_daily_digest(dishes, self.reference_tz),
            self._commit_daily,
        )

    async def _process_one_hour(self, now: datetime, stats: KindStats) -> None:
        candidates = await dish_storage.query_one_hour_candidates(now + self.one_hour_lead_min, now + self.one_hour_lead_max)
        if not candidates:
            return

        permitted = self._permitted(
            NotificationKind.ONE_HOUR,
            candidates,
            lambda d: state_machine.evaluate_one_hour_warning(d, now, self.one_hour_lead_min, self.one_hour_lead_max),
            stats,
        )
        await self._dispatch_groups(
            NotificationKind.ONE_HOUR,
            self._group_by_recipient(NotificationKind.ONE_HOUR, permitted),
            now,
            stats,
            render_one_hour,
            self._commit_one_hour,
        )

    async def _process_expired(self, now: datetime, stats: KindStats) -> None:
        candidates = await dish_storage.query_expiry_candidates(now)
        if not candidates:
            return

        permitted = self._permitted(
            NotificationKind.EXPIRED,
            candidates,
            lambda d: state_machine.evaluate_expiry(d, now, self.repeat_interval),
            stats,
        )
        await self._dispatch_groups(
            NotificationKind.EXPIRED,
            self._group_by_recipient(NotificationKind.EXPIRED, permitted),
            now,
            stats,
            render_expired,
            self._commit_expired,
        )

    # ----------------- 提交 ----------------
    async def _commit_daily(self, dishes: list[Dish], now: datetime) -> None:
        await dish_storage.mark_notified_daily([d.dish_id for d in dishes])

    async def _commit_one_hour(self, dishes: list[Dish], now: datetime) -> None:
        await dish_storage.mark_notified_one_hour([d.dish_id for d in dishes])

    async def _commit_expired(self, dishes: list[Dish], now: datetime) -> None:
        newly_expired = []
        repeated = []
        for d in dishes:
            state_machine.expiry_transition(d)
            if d.status == DishStatus.ACTIVE:
                newly_expired.append(d.dish_id)
            else:
                repeated.append(d.dish_id)
        await dish_storage.mark_expired(newly_expired, now)
        await dish_storage.touch_last_reminder(repeated, now)

    # ----------------- 公共步骤 ----------------
    def _permitted(
        self,
        kind: NotificationKind,
        candidates: list[Dish],
        evaluate: Callable[[Dish], Decision],
        stats: KindStats,
    ) -> list[Dish]:
        permitted = []
        for dish in candidates:
            try:
                decision = evaluate(dish)
            except MalformedItem as e:
                logger.warning(f"[{kind.value}] 数据异常, 已排除在自动流程之外: {e}")
                stats.malformed += 1
                continue
            if decision == Decision.PERMIT:
                permitted.append(dish)
            else:
                logger.trace(f"[{kind.value}] 状态机拒绝: dish_id={dish.dish_id}, status={dish.status.value}")
        return permitted

    def _group_by_recipient(self, kind: NotificationKind, dishes: list[Dish]) -> dict[int, list[Dish]]:
        groups: dict[int, list[Dish]] = {}
        for dish in dishes:
            if dish.chat_id is None:
                logger.warning(f"[{kind.value}] 菜品没有 chat_id, 无法通知: dish_id={dish.dish_id}, name={dish.name}")
                continue
            groups.setdefault(dish.chat_id, []).append(dish)
        return groups

    async def _dispatch_groups(
        self,
        kind: NotificationKind,
        groups: dict[int, list[Dish]],
        now: datetime,
        stats: KindStats,
        render: Renderer,
        commit: Committer,
    ) -> None:
        if not groups:
            return
        logger.debug(f"[{kind.value}] 准备通知 {len(groups)} 个接收者: {list(groups)}")
        results = await asyncio.gather(
            *(self._deliver(kind, chat_id, dishes, now, render, commit) for chat_id, dishes in groups.items())
        )
        for ok in results:
            if ok:
                stats.sent += 1
            else:
                stats.errors += 1

    async def _deliver(
        self,
        kind: NotificationKind,
        chat_id: int,
        dishes: list[Dish],
        now: datetime,
        render: Renderer,
        commit: Committer,
    ) -> bool:
        """向单个接收者投递并提交; 任何异常都只影响该接收者"""
        dish_ids = [d.dish_id for d in dishes]
        try:
            # 超长的合并消息分段发送, 全部成功才算投递成功
            for chunk in split_message(render(dishes)):
                await asyncio.wait_for(self.dispatcher.send(chat_id, chunk), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[{kind.value}] 向 chat_id={chat_id} 投递超时 ({self.send_timeout}s), 下个 tick 重试")
            bus.emit(E.NOTIFICATION_FAILED, kind, chat_id, dish_ids)
            return False
        except DispatchError as e:
            logger.error(f"[{kind.value}] {e}, 下个 tick 重试")
            bus.emit(E.NOTIFICATION_FAILED, kind, chat_id, dish_ids)
            return False
        except Exception as e:
            logger.error(f"[{kind.value}] 向 chat_id={chat_id} 投递时发生预期外的错误: {e}", exc_info=e)
            bus.emit(E.NOTIFICATION_FAILED, kind, chat_id, dish_ids)
            return False

        logger.info(f"[{kind.value}] 已通知 chat_id={chat_id}, 菜品数={len(dishes)}")
        bus.emit(E.NOTIFICATION_SENT, kind, chat_id, dish_ids)

        try:
            await commit(dishes, now)
        except StoreQueryError as e:
            # 消息已发出但标记未写入, 下个 tick 可能会再发一次
            logger.error(f"[{kind.value}] chat_id={chat_id} 已投递但提交失败: {e}, dish_ids={dish_ids}")
            return False
        except Exception as e:
            logger.error(f"[{kind.value}] chat_id={chat_id} 提交时发生预期外的错误: {e}, dish_ids={dish_ids}", exc_info=e)
            return False
        return True


_scheduler: ExpiryScheduler | None = None


def configure_scheduler(scheduler: ExpiryScheduler) -> None:
    global _scheduler
    _scheduler = scheduler


def require_scheduler() -> ExpiryScheduler:
    if _scheduler is None:
        raise RuntimeError("ExpiryScheduler 尚未配置，请先调用 configure_scheduler()")
    return _scheduler
