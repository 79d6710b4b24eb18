import asyncio
from datetime import time, timedelta

import pytest

from conftest import DIGEST_NOW, NOW, TZ, FakeDispatcher
from datamodel import DishStatus
from core.messages import MAX_MESSAGE_LENGTH
from errors import DispatchError, StoreQueryError
from world.expiry_scheduler import ExpiryScheduler
import storage.db_config as db_config
import storage.dish as dish_storage
import storage.user_settings as user_settings_storage
import world.expiry_scheduler as expiry_scheduler_module


def _scheduler(dispatcher, clock, **kwargs) -> ExpiryScheduler:
    return ExpiryScheduler(dispatcher, clock, reference_tz=TZ, **kwargs)


async def _add(chat_id, name, expires_in: timedelta, created_ago: timedelta = timedelta(days=1)):
    return await dish_storage.create_dish(chat_id, name, NOW + expires_in, NOW - created_ago)


@pytest.mark.asyncio
async def test_expired_dish_is_transitioned_and_notified_once(db, dispatcher, clock) -> None:
    dish = await _add(100, "Soup", -timedelta(seconds=1))
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.expired.sent == 1
    assert len(dispatcher.sent_to(100)) == 1
    assert "Soup" in dispatcher.sent_to(100)[0]
    loaded = await dish_storage.get_dish(dish.dish_id)
    assert loaded.status == DishStatus.EXPIRED
    assert loaded.last_reminder_at == NOW


@pytest.mark.asyncio
async def test_one_hour_warning_is_batched_per_recipient(db, dispatcher, clock) -> None:
    await _add(100, "Soup", timedelta(minutes=58))
    await _add(100, "Salad", timedelta(minutes=63))
    await _add(200, "Cake", timedelta(minutes=60))
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.one_hour.sent == 2
    assert len(dispatcher.sent_to(100)) == 1
    assert "Soup" in dispatcher.sent_to(100)[0] and "Salad" in dispatcher.sent_to(100)[0]
    assert len(dispatcher.sent_to(200)) == 1


@pytest.mark.asyncio
async def test_repeated_ticks_with_same_now_are_idempotent(db, dispatcher, clock) -> None:
    dish = await _add(100, "Soup", timedelta(minutes=60))
    scheduler = _scheduler(dispatcher, clock)

    first = await scheduler.run_tick()
    second = await scheduler.run_tick()
    third = await scheduler.run_tick()

    assert first.one_hour.sent == 1
    assert second.one_hour.sent == 0
    assert third.one_hour.sent == 0
    assert len(dispatcher.sent) == 1
    assert (await dish_storage.get_dish(dish.dish_id)).notified_one_hour is True


@pytest.mark.asyncio
async def test_one_hour_soup_scenario_out_of_order_ticks(db, dispatcher, clock) -> None:
    dish = await _add(100, "Soup", timedelta(hours=2))
    scheduler = _scheduler(dispatcher, clock)

    clock.now = dish.expires_at - timedelta(minutes=60)
    assert (await scheduler.run_tick()).one_hour.sent == 1

    clock.now = dish.expires_at - timedelta(minutes=61)
    assert (await scheduler.run_tick()).one_hour.sent == 0
    assert len(dispatcher.sent) == 1


@pytest.mark.asyncio
async def test_failure_for_one_recipient_does_not_block_others(db, clock) -> None:
    dispatcher = FakeDispatcher(failing={300})
    dishes = {chat_id: await _add(chat_id, f"Dish {chat_id}", -timedelta(minutes=1)) for chat_id in (100, 200, 300, 400, 500)}
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.expired.sent == 4
    assert summary.expired.errors == 1
    for chat_id, dish in dishes.items():
        loaded = await dish_storage.get_dish(dish.dish_id)
        expected = DishStatus.ACTIVE if chat_id == 300 else DishStatus.EXPIRED
        assert loaded.status == expected

    # 下一个 tick 只重试失败的接收者
    dispatcher.failing.clear()
    dispatcher.sent.clear()
    clock.now = NOW + timedelta(minutes=1)
    retry = await scheduler.run_tick()
    assert retry.expired.sent == 1
    assert [chat_id for chat_id, _ in dispatcher.sent] == [300]
    assert (await dish_storage.get_dish(dishes[300].dish_id)).status == DishStatus.EXPIRED


@pytest.mark.asyncio
async def test_send_timeout_counts_as_failure(db, clock) -> None:
    dispatcher = FakeDispatcher(delay=0.2)
    dish = await _add(100, "Soup", timedelta(minutes=60))
    scheduler = _scheduler(dispatcher, clock, send_timeout=0.01)

    summary = await scheduler.run_tick()

    assert summary.one_hour.errors == 1
    assert summary.one_hour.sent == 0
    assert (await dish_storage.get_dish(dish.dish_id)).notified_one_hour is False


@pytest.mark.asyncio
async def test_expired_reminders_repeat_at_bounded_rate(db, dispatcher, clock) -> None:
    await _add(100, "Soup", -timedelta(minutes=5))
    scheduler = _scheduler(dispatcher, clock)

    assert (await scheduler.run_tick()).expired.sent == 1

    clock.now = NOW + timedelta(minutes=30)
    assert (await scheduler.run_tick()).expired.sent == 0

    clock.now = NOW + timedelta(minutes=60)
    assert (await scheduler.run_tick()).expired.sent == 1
    assert len(dispatcher.sent_to(100)) == 2


@pytest.mark.asyncio
async def test_removed_dish_is_never_notified(db, dispatcher, clock) -> None:
    soon = await _add(100, "Soon", timedelta(minutes=60))
    past = await _add(100, "Past", -timedelta(minutes=60))
    for dish in (soon, past):
        await dish_storage.mark_removed(dish.dish_id, 100, NOW)
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert dispatcher.sent == []
    assert summary.to_dict()["results"]["expired"] == {"sent": 0, "errors": 0, "malformed": 0}


@pytest.mark.asyncio
async def test_daily_digest_sent_at_default_time(db, dispatcher, clock) -> None:
    # DIGEST_NOW 是莫斯科时间 10:05, 默认汇总时间 10:00
    dish = await _add(100, "Soup", timedelta(hours=8))
    await _add(100, "Tomorrow", timedelta(hours=30))
    clock.now = DIGEST_NOW
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.daily.sent == 1
    text = dispatcher.sent_to(100)[0]
    assert "Soup" in text and "Tomorrow" not in text
    assert (await dish_storage.get_dish(dish.dish_id)).notified_daily is True

    clock.now = DIGEST_NOW + timedelta(minutes=5)
    assert (await scheduler.run_tick()).daily.sent == 0


@pytest.mark.asyncio
async def test_daily_digest_not_sent_outside_digest_window(db, dispatcher, clock) -> None:
    dish = await _add(100, "Soup", timedelta(hours=8))
    clock.now = DIGEST_NOW - timedelta(hours=1)  # 09:05 MSK
    scheduler = _scheduler(dispatcher, clock)

    assert (await scheduler.run_tick()).daily.sent == 0
    assert (await dish_storage.get_dish(dish.dish_id)).notified_daily is False


@pytest.mark.asyncio
async def test_daily_digest_uses_each_recipient_own_time(db, dispatcher, clock) -> None:
    await user_settings_storage.set_digest_time(100, time(8, 0))
    await _add(100, "Configured", timedelta(hours=8))
    await _add(200, "Default", timedelta(hours=8))
    scheduler = _scheduler(dispatcher, clock)

    clock.now = DIGEST_NOW - timedelta(hours=2)  # 08:05 MSK
    early = await scheduler.run_tick()
    assert early.daily.sent == 1
    assert len(dispatcher.sent_to(100)) == 1
    assert dispatcher.sent_to(200) == []

    clock.now = DIGEST_NOW  # 10:05 MSK
    late = await scheduler.run_tick()
    assert late.daily.sent == 1
    assert len(dispatcher.sent_to(100)) == 1
    assert len(dispatcher.sent_to(200)) == 1


@pytest.mark.asyncio
async def test_dish_without_recipient_is_skipped_with_warning(db, dispatcher, clock) -> None:
    orphan = await _add(None, "Orphan", -timedelta(minutes=1))
    await _add(100, "Soup", -timedelta(minutes=1))
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.expired.sent == 1
    assert [chat_id for chat_id, _ in dispatcher.sent] == [100]
    assert (await dish_storage.get_dish(orphan.dish_id)).status == DishStatus.ACTIVE


@pytest.mark.asyncio
async def test_malformed_dish_is_excluded_and_counted(db, dispatcher, clock) -> None:
    await db_config.conn.execute(
        "INSERT INTO dishes (chat_id, name, created_at_utc, expires_at_utc) "
        "VALUES (100, 'Broken', '2026-03-01 00:00:00', '2026-03-01T00:00:00Z')"
    )
    await db_config.conn.commit()
    await _add(100, "Soup", -timedelta(minutes=1))
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.expired.malformed == 1
    assert summary.expired.sent == 1
    assert "Broken" not in dispatcher.sent_to(100)[0]


@pytest.mark.asyncio
async def test_store_failure_only_aborts_its_branch(db, dispatcher, clock, monkeypatch) -> None:
    async def _broken(*args, **kwargs):
        raise StoreQueryError("database is locked")

    monkeypatch.setattr(dish_storage, "query_daily_candidates", _broken)
    await _add(100, "Soup", -timedelta(minutes=1))
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.daily.errors == 1
    assert summary.expired.sent == 1


@pytest.mark.asyncio
async def test_commit_failure_is_reported_as_error(db, dispatcher, clock, monkeypatch) -> None:
    async def _broken(*args, **kwargs):
        raise StoreQueryError("disk I/O error")

    monkeypatch.setattr(dish_storage, "mark_notified_one_hour", _broken)
    await _add(100, "Soup", timedelta(minutes=60))
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert len(dispatcher.sent) == 1
    assert summary.one_hour.sent == 0
    assert summary.one_hour.errors == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(db, clock) -> None:
    dispatcher = FakeDispatcher(delay=0.05)
    await _add(100, "Soup", -timedelta(minutes=1))
    scheduler = _scheduler(dispatcher, clock)

    first, second = await asyncio.gather(scheduler.run_tick(), scheduler.run_tick())

    assert first.skipped is False
    assert second.skipped is True
    assert len(dispatcher.sent) == 1


@pytest.mark.asyncio
async def test_main_loop_survives_tick_errors(db, dispatcher, clock, monkeypatch) -> None:
    scheduler = _scheduler(dispatcher, clock, tick_interval=0.01)
    shutdown_event = asyncio.Event()
    calls = []

    async def _flaky_tick():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        shutdown_event.set()

    monkeypatch.setattr(scheduler, "run_tick", _flaky_tick)
    await asyncio.wait_for(scheduler.main_loop(shutdown_event), timeout=2)

    assert len(calls) == 2
    assert scheduler.get_status()["running"] is False


@pytest.mark.asyncio
async def test_status_reports_last_summary(db, dispatcher, clock) -> None:
    scheduler = _scheduler(dispatcher, clock)
    assert scheduler.get_status()["last_summary"] is None

    await scheduler.run_tick()

    status = scheduler.get_status()
    assert status["last_tick_at"] == NOW.isoformat()
    assert set(status["last_summary"]["results"]) == {"daily", "one_hour", "expired"}


def test_require_scheduler_before_configure(monkeypatch) -> None:
    monkeypatch.setattr(expiry_scheduler_module, "_scheduler", None)
    with pytest.raises(RuntimeError):
        expiry_scheduler_module.require_scheduler()


@pytest.mark.asyncio
async def test_large_batch_is_sent_in_chunks_and_committed(db, dispatcher, clock) -> None:
    dishes = [await _add(100, f"Dish number {i}", -timedelta(minutes=1)) for i in range(160)]
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.expired.sent == 1
    texts = dispatcher.sent_to(100)
    assert len(texts) > 1
    assert all(len(text) <= MAX_MESSAGE_LENGTH for text in texts)
    assert sum(text.count("已过期") for text in texts) == 160
    for dish in dishes:
        assert (await dish_storage.get_dish(dish.dish_id)).status == DishStatus.EXPIRED


class _FailOnSecondChunk(FakeDispatcher):
    async def send(self, chat_id: int, text: str) -> None:
        if self.sent:
            raise DispatchError(chat_id, "Bad Request: message is too long")
        await super().send(chat_id, text)


@pytest.mark.asyncio
async def test_partial_chunk_failure_commits_nothing(db, clock) -> None:
    dispatcher = _FailOnSecondChunk()
    dishes = [await _add(100, f"Dish number {i}", -timedelta(minutes=1)) for i in range(160)]
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_tick()

    assert summary.expired.errors == 1
    assert len(dispatcher.sent) == 1
    for dish in dishes:
        assert (await dish_storage.get_dish(dish.dish_id)).status == DishStatus.ACTIVE
