"""领域层模型与协议。

包含：
- models: Message / StreamSession / EngineEvent 等核心数据结构。
- conversation: 对话快照及 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
