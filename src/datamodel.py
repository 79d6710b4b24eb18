from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

__all__ = [
    "DishStatus", "Dish",
    "Decision", "NotificationKind",
    "KindStats", "TickSummary",
    "UserInfo", "ChatSession",
]

# ----------------- Dish 数据模型 ----------------
class DishStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REMOVED = "removed"


@dataclass
class Dish:
    dish_id: int
    chat_id: Optional[int]  # 为空的菜品永远不会被通知, 只会在日志里告警
    name: str
    created_at: datetime
    expires_at: Optional[datetime]  # 为空代表数据损坏 (MalformedItem)
    status: DishStatus = DishStatus.ACTIVE
    notified_daily: bool = False
    notified_one_hour: bool = False
    last_reminder_at: Optional[datetime] = None  # 过期后重复提醒的节流依据
    removed_at: Optional[datetime] = None


# ----------------- 状态机数据模型 ----------------
class Decision(str, Enum):
    PERMIT = "permit"
    SKIP = "skip"


class NotificationKind(str, Enum):
    DAILY = "daily"
    ONE_HOUR = "one_hour"
    EXPIRED = "expired"


# ----------------- 调度器数据模型 ----------------
@dataclass
class KindStats:
    sent: int = 0
    errors: int = 0
    malformed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"sent": self.sent, "errors": self.errors, "malformed": self.malformed}


@dataclass
class TickSummary:
    started_at: datetime
    duration_ms: float = 0.0
    skipped: bool = False
    daily: KindStats = field(default_factory=KindStats)
    one_hour: KindStats = field(default_factory=KindStats)
    expired: KindStats = field(default_factory=KindStats)

    def stats_for(self, kind: NotificationKind) -> KindStats:
        return getattr(self, kind.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
            "skipped": self.skipped,
            "results": {kind.value: self.stats_for(kind).to_dict() for kind in NotificationKind},
        }


# ----------------- User 数据模型 ----------------
@dataclass
class UserInfo:
    chat_id: int
    user_name: Optional[str] = None
    pin: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class ChatSession:
    """单个会话的输入状态, 存放在通道的 per-chat 数据里, 不做进程级全局表"""
    step: Optional[str] = None  # None, 'user_name', 'pin', 'dish_name', 'dish_duration'
    pending_user_name: Optional[str] = None
    pending_dish_name: Optional[str] = None
    recent_names: List[str] = field(default_factory=list)  # 快速添加按钮对应的名称, 按钮里只放下标

    def reset(self) -> None:
        self.step = None
        self.pending_user_name = None
        self.pending_dish_name = None
        self.recent_names = []
