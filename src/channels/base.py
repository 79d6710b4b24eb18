from abc import ABC, abstractmethod


class Dispatcher(ABC):
    """通知投递通道

    send 正常返回即视为投递成功; 失败时抛出 DispatchError
    超时由调用方 (调度器) 控制, 超时同样视为投递失败
    """

    @abstractmethod
    async def send(self, chat_id: int, text: str) -> None:
        pass


__all__ = ["Dispatcher"]
