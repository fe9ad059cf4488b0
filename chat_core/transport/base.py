"""传输层抽象接口。

上层 ConversationEngine 不直接依赖 HTTP SDK，而是依赖此协议：

- open_stream(...) 发起生成请求，返回 (取消句柄, 字节流)。
- 取消句柄由调用方创建并传入；调用 cancel() 后字节流应尽快结束，
  迭代方看到的是正常的流结束，而不是异常。
"""

import asyncio
from typing import AsyncIterator, Optional, Protocol, Sequence, Tuple

from chat_core.domain.models import Message


class CancelToken:
    """协作式取消句柄。

    cancel() 可以重复调用，只有第一次生效。
    """

    def __init__(self) -> None:
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """请求取消；返回本次调用是否真正触发了取消。"""
        if self._cancelled:
            return False
        self._cancelled = True
        if self._event is not None:
            self._event.set()
        return True

    async def wait(self) -> None:
        """挂起直到 cancel() 被调用。"""
        if self._event is None:
            # Event 需要在事件循环内创建
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()


ByteStream = AsyncIterator[bytes]


class TransportClient(Protocol):
    """生成接口客户端协议。

    实现者需要提供：
    - name: 传输名称，用于日志。
    - open_stream(...): 发起一次请求。状态码异常或无正文时抛出 TransportError，
      读取过程中的失败以 StreamReadError 抛出。
    """

    name: str

    async def open_stream(
        self,
        messages: Sequence[Message],
        system_directive: str,
        timestamp: int,
        cancel_token: Optional[CancelToken] = None,
    ) -> Tuple[CancelToken, ByteStream]:
        ...
