"""统一的对话与流式会话数据模型。

本模块定义了客户端内部共享的标准数据结构：

- Message: 一条对话消息（system/user/assistant）。
- StreamSession: 一次在途生成请求的簿记单元。
- EngineEvent: 引擎状态变化时推送给订阅者的事件。

Message 一旦写入对话即不可变；正在生成的助手回复只存在于
StreamSession.buffer 中，直到被归档。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional, Any, Dict, TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    from chat_core.domain.exceptions import BusinessError
    from chat_core.engine.conversation_engine import ConversationEngine
    from chat_core.transport.base import CancelToken


# 消息角色类型（与生成接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]

ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class Message:
    """一条已归档的对话消息。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_payload(cls, data: Any) -> "Message":
        """从 {role, content} 字典解析消息，格式不合法时抛出 ValueError。"""

        if not isinstance(data, dict):
            raise ValueError(f"Message payload must be an object, got {type(data).__name__}")
        role = data.get("role")
        content = data.get("content")
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")
        if not isinstance(content, str):
            raise ValueError("Message content must be a string")
        return cls(role=role, content=content)


class StreamStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    CANCELLED = "cancelled"
    ERRORED = "errored"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.CANCELLED, StreamStatus.ERRORED, StreamStatus.COMPLETED)


class EngineState(str, Enum):
    """对话状态机的宏观状态。"""

    IDLE = "idle"
    AWAITING_STREAM = "awaiting_stream"
    STREAMING = "streaming"
    ARCHIVING = "archiving"


@dataclass
class StreamSession:
    """一次在途生成请求。

    - cancel_token: 传给传输层的取消句柄，会话结束后即被释放（置为 None）。
    - buffer: 正在生成的助手回复，归档前不属于对话。
    - status: idle → streaming → completed / cancelled / errored。
    - error: 以 errored 结束时记录的异常。
    """

    id: str = field(default_factory=lambda: f"s-{uuid4().hex[:12]}")
    cancel_token: Optional["CancelToken"] = None
    buffer: str = ""
    status: StreamStatus = StreamStatus.IDLE
    fragment_count: int = 0
    error: Optional["BusinessError"] = None


EventKind = Literal["messages", "buffer", "loading", "directive", "error"]


@dataclass
class EngineEvent:
    """ConversationEngine 产生的变更事件。

    kind:
        - "messages": 对话消息列表发生变化。
        - "buffer": 正在生成的回复新增了片段。
        - "loading": 加载状态切换。
        - "directive": 系统指令或其编辑状态变化。
        - "error": 一次会话以错误结束，详情见 engine.last_error。
    """

    kind: EventKind
    engine: "ConversationEngine"
