"""传输层。

该包下的模块负责：
- 定义取消句柄与 TransportClient 协议 (base)。
- 请求签名 (signature)。
- 基于 httpx 的流式实现 (http_client)。
"""

from typing import Callable, Optional

from chat_core.config.settings import settings
from chat_core.transport.base import CancelToken, TransportClient
from chat_core.transport.http_client import HttpTransportClient
from chat_core.transport.signature import SignatureProvider, Sha256SignatureProvider


def create_transport(
    cfg=None,
    signer: Optional[SignatureProvider] = None,
    credential_source: Optional[Callable[[], Optional[str]]] = None,
) -> TransportClient:
    """根据配置创建 TransportClient 实例。"""

    cfg = cfg or settings
    return HttpTransportClient(
        cfg,
        signer=signer or Sha256SignatureProvider(cfg.signature_secret),
        credential_source=credential_source,
    )


__all__ = ["CancelToken", "TransportClient", "HttpTransportClient", "create_transport"]
