"""
共享测试夹具

- 每个测试一个独立的 aiosqlite 数据库 (tmp_path)
- 记录发送内容的假投递通道
- 固定时钟
"""

import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

import storage.db_config as db_config
from channels.base import Dispatcher
from errors import DispatchError

# 2026-03-10 12:05 (Europe/Moscow, UTC+3), 不在默认每日汇总时间窗口内
NOW = datetime(2026, 3, 10, 9, 5, tzinfo=timezone.utc)
DIGEST_NOW = datetime(2026, 3, 10, 7, 5, tzinfo=timezone.utc)  # 10:05 MSK
TZ = "Europe/Moscow"


class FakeDispatcher(Dispatcher):
    def __init__(self, failing: set[int] | None = None, delay: float = 0.0) -> None:
        self.failing = failing or set()
        self.delay = delay
        self.sent: list[tuple[int, str]] = []

    async def send(self, chat_id: int, text: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if chat_id in self.failing:
            raise DispatchError(chat_id, "chat not found")
        self.sent.append((chat_id, text))

    def sent_to(self, chat_id: int) -> list[str]:
        return [text for cid, text in self.sent if cid == chat_id]


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest_asyncio.fixture
async def db(tmp_path):
    await db_config.init_db(str(tmp_path / "dishwatch-test.db"))
    yield db_config.conn
    await db_config.close_db()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(NOW)
