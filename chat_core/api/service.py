"""对外 API 服务模块。

提供组装好的 ConversationEngine 供上层应用（终端、GUI 等）使用。
"""

from typing import Callable, Optional

from chat_core.config.settings import settings
from chat_core.engine.conversation_engine import ConversationEngine
from chat_core.infrastructure.storage.json_store import JsonKeyValueStore, LocalConversationStore
from chat_core.transport import create_transport
from chat_core.transport.base import TransportClient


_engine: Optional[ConversationEngine] = None


def create_engine(
    storage_root: Optional[str] = None,
    transport: Optional[TransportClient] = None,
    on_render: Optional[Callable[[], None]] = None,
) -> ConversationEngine:
    """按配置组装引擎：键值存储 → 对话存储 → 传输层 → 引擎。

    Args:
        storage_root: 存储目录（可选，默认 settings.storage_root）
        transport: 传输层实例（可选，默认 HttpTransportClient）
        on_render: 渲染副作用回调（可选）

    Returns:
        尚未 restore 的 ConversationEngine
    """
    kv = JsonKeyValueStore(root=storage_root or settings.storage_root)
    store = LocalConversationStore(kv)
    if transport is None:
        transport = create_transport(settings, credential_source=store.credential)
    return ConversationEngine(transport=transport, store=store, on_render=on_render)


def get_default_engine() -> ConversationEngine:
    """获取默认引擎实例（单例），首次创建时从存储恢复对话。"""
    global _engine
    if _engine is None:
        _engine = create_engine()
        _engine.restore()
    return _engine
