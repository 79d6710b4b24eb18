"""异常定义

- StoreQueryError: 存储暂时不可用, 只中止当前 tick 中受影响的分支, 下个 tick 重试
- DispatchError: 单个接收者投递失败, 不影响同一 tick 内的其他接收者
- MalformedItem: 数据本身有问题 (expires_at 为空或无法解析), 永久排除在自动流程之外
- ConfigError: 启动配置错误, 唯一允许让进程退出的错误
"""

__all__ = ["DishwatchError", "StoreQueryError", "DispatchError", "MalformedItem", "ConfigError"]


class DishwatchError(Exception):
    pass


class StoreQueryError(DishwatchError):
    pass


class DispatchError(DishwatchError):
    def __init__(self, chat_id: int, message: str) -> None:
        super().__init__(f"向 chat_id={chat_id} 投递失败: {message}")
        self.chat_id = chat_id


class MalformedItem(DishwatchError):
    def __init__(self, dish_id: int, reason: str = "expires_at 缺失或非法") -> None:
        super().__init__(f"dish_id={dish_id}: {reason}")
        self.dish_id = dish_id


class ConfigError(DishwatchError):
    pass
