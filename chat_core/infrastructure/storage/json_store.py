import json
import os
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore
from chat_core.domain.exceptions import StoreError
from chat_core.domain.models import Message
from chat_core.infrastructure.logging.logger import logger

MESSAGES_KEY = "messageList"
DIRECTIVE_KEY = "currentSystemRoleSettings"
CREDENTIAL_KEY = "pass"


class JsonKeyValueStore:
    """字符串键值存储，整体保存为一个 JSON 文件。

    读取失败（文件缺失、JSON 损坏）时视为空存储；写入使用临时文件加
    os.replace，避免写一半的文件覆盖旧数据。
    """

    def __init__(self, root: str | Path | None = None, filename: str = "local_storage.json"):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / filename

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def update(self, values: Dict[str, str]) -> None:
        """一次写入多个键，要么全部生效，要么都不生效。"""
        data = self._read()
        data.update(values)
        self._write(data)

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Key-value store unreadable, treating as empty", extra={"extra": {"path": str(self._path), "error": str(e)}})
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write(self, data: Dict[str, str]) -> None:
        tmp_path = self._root / f"{self._path.name}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))


class LocalConversationStore(ConversationStore):
    """把对话保存到两个键：消息列表（JSON 文本）与系统指令（纯文本）。"""

    def __init__(self, kv: JsonKeyValueStore):
        self._kv = kv

    def load(self) -> Conversation:
        raw = self._kv.get(MESSAGES_KEY)
        if not raw:
            return Conversation()
        try:
            messages = self._parse_messages(raw)
        except ValueError as e:
            logger.warning("Stored conversation is malformed, starting empty", extra={"extra": {"error": str(e)}})
            return Conversation()
        # 只有存在消息列表时才恢复系统指令
        directive = self._kv.get(DIRECTIVE_KEY) or ""
        return Conversation(messages=messages, system_directive=directive)

    def save(self, conversation: Conversation) -> None:
        payload = [m.to_payload() for m in conversation.messages]
        self._kv.update({
            MESSAGES_KEY: json.dumps(payload, ensure_ascii=False),
            DIRECTIVE_KEY: conversation.system_directive,
        })

    def credential(self) -> Optional[str]:
        return self._kv.get(CREDENTIAL_KEY)

    @staticmethod
    def _parse_messages(raw: str) -> List[Message]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise ValueError("Message list must be an array")
        return [Message.from_payload(item) for item in data]
