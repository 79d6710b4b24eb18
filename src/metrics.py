"""
运行时指标: 统计各类通知的发送/失败次数、写销次数与 tick 情况, 供 /api/v1/metrics 展示
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from datamodel import NotificationKind, TickSummary
from events import bus, E


@dataclass
class RuntimeMetrics:
    sent_count: dict[str, int] = field(default_factory=lambda: {k.value: 0 for k in NotificationKind})
    failed_count: dict[str, int] = field(default_factory=lambda: {k.value: 0 for k in NotificationKind})
    dish_created_count: int = 0
    dish_written_off_count: int = 0
    tick_count: int = 0
    tick_skipped_count: int = 0
    tick_total_duration_ms: float = 0.0
    last_tick_at: float | None = None

    def record_sent(self, kind: NotificationKind) -> None:
        self.sent_count[kind.value] += 1

    def record_failed(self, kind: NotificationKind) -> None:
        self.failed_count[kind.value] += 1

    def record_dish_created(self) -> None:
        self.dish_created_count += 1

    def record_dish_written_off(self) -> None:
        self.dish_written_off_count += 1

    def record_tick(self, summary: TickSummary) -> None:
        self.last_tick_at = time.time()
        if summary.skipped:
            self.tick_skipped_count += 1
            return
        self.tick_count += 1
        self.tick_total_duration_ms += max(0.0, summary.duration_ms)

    def snapshot(self) -> dict:
        avg_tick_ms = 0.0
        if self.tick_count > 0:
            avg_tick_ms = self.tick_total_duration_ms / self.tick_count

        return {
            "sent_count": dict(self.sent_count),
            "failed_count": dict(self.failed_count),
            "dish_created_count": self.dish_created_count,
            "dish_written_off_count": self.dish_written_off_count,
            "tick_count": self.tick_count,
            "tick_skipped_count": self.tick_skipped_count,
            "tick_avg_duration_ms": round(avg_tick_ms, 2),
            "last_tick_at_epoch": self.last_tick_at,
            "last_tick_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_tick_at))
                if self.last_tick_at is not None
                else None
            ),
        }


runtime_metrics = RuntimeMetrics()


@bus.on(E.NOTIFICATION_SENT)
def _on_notification_sent(kind: NotificationKind, chat_id: int, dish_ids: list[int]) -> None:
    runtime_metrics.record_sent(kind)


@bus.on(E.NOTIFICATION_FAILED)
def _on_notification_failed(kind: NotificationKind, chat_id: int, dish_ids: list[int]) -> None:
    runtime_metrics.record_failed(kind)


@bus.on(E.DISH_CREATED)
def _on_dish_created(dish) -> None:
    runtime_metrics.record_dish_created()


@bus.on(E.DISH_WRITTEN_OFF)
def _on_dish_written_off(dish) -> None:
    runtime_metrics.record_dish_written_off()


@bus.on(E.TICK_COMPLETED)
def _on_tick_completed(summary: TickSummary) -> None:
    runtime_metrics.record_tick(summary)


__all__ = ["RuntimeMetrics", "runtime_metrics"]
