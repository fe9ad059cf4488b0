"""HTTP 流式传输适配器。

与生成接口的约定：
- URL: settings.endpoint_url，方法 POST。
- 请求体: {"messages": [...], "time": <毫秒时间戳>, "pass": <口令或 null>, "sign": <签名>}。
- 响应: 2xx 且带正文时按原始字节流逐块读取；否则视为传输失败。

读取不设超时：流会一直保持，直到服务端关闭连接或调用方取消。
"""

import asyncio
import contextlib
from typing import Awaitable, Callable, Optional, Sequence, Tuple, TypeVar

import httpx

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation
from chat_core.domain.exceptions import ApiError, EmptyBodyError, NetworkError, StreamReadError
from chat_core.domain.models import Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.transport.base import ByteStream, CancelToken
from chat_core.transport.signature import SignatureProvider, Sha256SignatureProvider

T = TypeVar("T")

_NO_BODY_STATUSES = {204, 205, 304}


async def _until_cancelled(
    aw: Awaitable[T],
    token: CancelToken,
    discard: Optional[Callable[[T], Awaitable[None]]] = None,
) -> Tuple[bool, Optional[T]]:
    """等待 aw 完成；若 token 先被取消，则中止 aw 并返回 (False, None)。

    外层任务被取消时，aw 会先被取消并等待结束再向上抛出；若 aw 恰好已经
    产出结果，则交给 discard 释放。
    """

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is None and discard is not None:
            await discard(task.result())
        raise
    finally:
        waiter.cancel()
    if task in done:
        return True, task.result()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    return False, None


async def _close_response(resp: httpx.Response) -> None:
    await resp.aclose()


class HttpTransportClient:
    """基于 httpx.AsyncClient 的 TransportClient 实现。"""

    name = "http"

    def __init__(
        self,
        cfg=settings,
        signer: Optional[SignatureProvider] = None,
        credential_source: Optional[Callable[[], Optional[str]]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = cfg
        self._signer = signer or Sha256SignatureProvider(getattr(cfg, "signature_secret", ""))
        self._credential_source = credential_source
        self._client = client

    async def open_stream(
        self,
        messages: Sequence[Message],
        system_directive: str,
        timestamp: int,
        cancel_token: Optional[CancelToken] = None,
    ) -> Tuple[CancelToken, ByteStream]:
        token = cancel_token or CancelToken()
        payload = await self._build_payload(messages, system_directive, timestamp)

        client = self._client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=self._settings.http_connect_timeout),
            trust_env=False,
        )
        owned = client if self._client is None else None
        request = client.build_request("POST", self._settings.endpoint_url, json=payload)
        try:
            sent, resp = await _until_cancelled(client.send(request, stream=True), token, discard=_close_response)
        except httpx.RequestError as e:
            await self._close(None, owned)
            raise NetworkError(code="NETWORK_ERROR", message=str(e), endpoint=self._settings.endpoint_url)
        except asyncio.CancelledError:
            await self._close(None, owned)
            raise
        if not sent or resp is None:
            await self._close(None, owned)
            return token, self._empty()

        if not resp.is_success:
            await self._close(resp, owned)
            raise ApiError(
                code="API_ERROR",
                message=resp.reason_phrase or f"HTTP {resp.status_code}",
                http_status=resp.status_code,
            )
        if resp.status_code in _NO_BODY_STATUSES:
            await self._close(resp, owned)
            raise EmptyBodyError(code="NO_DATA", message="No data", http_status=resp.status_code)

        logger.debug(
            "Stream opened",
            extra={"extra": {"status_code": resp.status_code, "message_count": len(payload["messages"])}},
        )
        return token, self._iter_bytes(resp, token, owned)

    # ---- 辅助方法 ----

    async def _build_payload(
        self,
        messages: Sequence[Message],
        system_directive: str,
        timestamp: int,
    ) -> dict:
        request_messages = Conversation(list(messages), system_directive or "").request_messages()
        last_content = request_messages[-1].content if request_messages else ""
        return {
            "messages": [m.to_payload() for m in request_messages],
            "time": timestamp,
            "pass": self._credential(),
            "sign": await self._signer.sign(timestamp, last_content),
        }

    def _credential(self) -> Optional[str]:
        if self._credential_source is not None:
            stored = self._credential_source()
            if stored:
                return stored
        return getattr(self._settings, "site_password", None)

    async def _iter_bytes(
        self,
        resp: httpx.Response,
        token: CancelToken,
        owned: Optional[httpx.AsyncClient],
    ) -> ByteStream:
        chunks = resp.aiter_bytes()
        try:
            while not token.cancelled:
                received, chunk = await _until_cancelled(anext(chunks, None), token)
                if not received or chunk is None:
                    break
                if chunk:
                    yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise StreamReadError(code="STREAM_READ_ERROR", message=str(e) or type(e).__name__)
        finally:
            await chunks.aclose()
            await self._close(resp, owned)

    @staticmethod
    async def _empty() -> ByteStream:
        return
        yield b""

    @staticmethod
    async def _close(resp: Optional[httpx.Response], owned: Optional[httpx.AsyncClient]) -> None:
        if resp is not None:
            await resp.aclose()
        if owned is not None:
            await owned.aclose()
