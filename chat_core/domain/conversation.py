from dataclasses import dataclass, field
from typing import List, Protocol

from .models import Message


@dataclass
class Conversation:
    """对话快照：有序消息列表加可选的系统指令。"""

    messages: List[Message] = field(default_factory=list)
    system_directive: str = ""

    def request_messages(self) -> List[Message]:
        """构造发往生成接口的消息列表，系统指令（若有）总在最前。"""
        items = list(self.messages)
        if self.system_directive:
            items.insert(0, Message(role="system", content=self.system_directive))
        return items


class ConversationStore(Protocol):
    def load(self) -> Conversation:
        ...

    def save(self, conversation: Conversation) -> None:
        ...
