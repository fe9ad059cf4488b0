"""请求签名。

签名算法对核心而言是不透明的：ConversationEngine 只关心
sign(timestamp, content) -> token 这一输入输出约定。
"""

import hashlib
from typing import Protocol


class SignatureProvider(Protocol):
    async def sign(self, timestamp: int, content: str) -> str:
        ...


class Sha256SignatureProvider:
    """默认实现：sha256("{timestamp}:{content}:{secret}") 的十六进制摘要。"""

    def __init__(self, secret: str = ""):
        self._secret = secret

    async def sign(self, timestamp: int, content: str) -> str:
        raw = f"{timestamp}:{content}:{self._secret}".encode("utf-8")
        return hashlib.sha256(raw).hexdigest()
