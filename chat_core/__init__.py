"""Chat Core 顶层包。

该包提供流式对话客户端的核心实现，
包括配置加载、领域模型、传输层、增量解码、
对话状态机、渲染节流与持久化存储等能力。
"""

from chat_core.engine.conversation_engine import ConversationEngine

__all__ = ["ConversationEngine"]
