"""对话状态机。

ConversationEngine 拥有有序消息列表、系统指令与当前 StreamSession，
只通过下列状态迁移修改它们：

- submit(text): Idle → AwaitingStream → Streaming → Archiving → Idle。
- retry(): 删除最后一条助手消息后用原有历史重新请求。
- cancel(): 取消在途请求并归档已收到的部分回复。
- force_assistant(q, a): 不经传输层，直接追加一问一答。
- clear(): 原子地清空对话、系统指令与在途会话。

所有失败都不会让引擎崩溃：传输失败或读流失败时丢弃部分回复、
记录 last_error 并回到 Idle。
"""

import asyncio
import contextlib
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore
from chat_core.domain.exceptions import BusinessError, StreamReadError
from chat_core.domain.models import EngineEvent, EngineState, EventKind, Message, StreamSession, StreamStatus
from chat_core.engine.decoder import decode_fragments
from chat_core.engine.throttle import LeadingEdgeThrottle
from chat_core.infrastructure.logging.logger import logger
from chat_core.transport.base import CancelToken, TransportClient

Listener = Callable[[EngineEvent], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConversationEngine:
    def __init__(
        self,
        transport: TransportClient,
        store: Optional[ConversationStore] = None,
        on_render: Optional[Callable[[], None]] = None,
        render_interval: Optional[float] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        """初始化对话引擎。

        Args:
            transport: 传输层客户端
            store: 持久化存储（可选，用于 restore / persist）
            on_render: 每个被接受的片段触发的渲染副作用（如滚动到底部）
            render_interval: 渲染节流间隔（秒），默认取 settings.render_throttle_ms
            clock: 毫秒时间戳来源，随请求一起发送并参与签名
        """
        self._transport = transport
        self._store = store
        self._clock = clock
        if render_interval is None:
            render_interval = settings.render_throttle_ms / 1000
        self._render = LeadingEdgeThrottle(on_render or (lambda: None), render_interval)

        self._messages: List[Message] = []
        self._system_directive = ""
        self._directive_editing = False
        self._session: Optional[StreamSession] = None
        self._state = EngineState.IDLE
        self._loading = False
        self._listeners: List[Listener] = []
        self.last_error: Optional[BusinessError] = None

    # ---- 只读视图 ----

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def system_directive(self) -> str:
        return self._system_directive

    @property
    def buffer(self) -> str:
        return self._session.buffer if self._session else ""

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    @property
    def directive_editing(self) -> bool:
        return self._directive_editing

    @property
    def can_edit_directive(self) -> bool:
        return not self._messages and not self._system_directive

    @property
    def can_retry(self) -> bool:
        return self._is_idle() and bool(self._messages) and self._messages[-1].role == "assistant"

    def snapshot(self) -> Conversation:
        return Conversation(messages=list(self._messages), system_directive=self._system_directive)

    # ---- 订阅 ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册变更监听器，返回取消订阅函数。"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- 状态迁移 ----

    async def submit(self, user_text: str) -> Optional[StreamSession]:
        """追加一条用户消息并请求生成；空输入或引擎忙时直接忽略。"""
        if not user_text:
            self._ignored("EMPTY_INPUT")
            return None
        if self._directive_editing:
            self._ignored("DIRECTIVE_EDITING")
            return None
        if not self._is_idle():
            self._ignored("ENGINE_BUSY")
            return None
        self._messages.append(Message(role="user", content=user_text))
        self._notify("messages")
        return await self._request_with_latest_messages()

    async def retry(self) -> Optional[StreamSession]:
        """仅当最后一条是助手消息时，删除它并用剩余历史重新请求。"""
        if self._directive_editing:
            self._ignored("DIRECTIVE_EDITING")
            return None
        if not self._is_idle():
            self._ignored("ENGINE_BUSY")
            return None
        if not self._messages or self._messages[-1].role != "assistant":
            self._ignored("INVALID_RETRY_TARGET")
            return None
        self._messages.pop()
        self._notify("messages")
        return await self._request_with_latest_messages()

    def force_assistant(self, user_text: str, assistant_text: str) -> bool:
        """不调用传输层，原子地追加一对 user/assistant 消息。"""
        if not user_text or not assistant_text:
            self._ignored("EMPTY_INPUT")
            return False
        if self._directive_editing or not self._is_idle():
            self._ignored("ENGINE_BUSY")
            return False
        self._messages.extend([
            Message(role="user", content=user_text),
            Message(role="assistant", content=assistant_text),
        ])
        self._notify("messages")
        return True

    def cancel(self) -> bool:
        """取消在途会话并归档已有的部分回复；没有在途会话时返回 False。"""
        session = self._session
        if session is None or session.status.is_terminal:
            return False
        session.status = StreamStatus.CANCELLED
        if session.cancel_token is not None:
            session.cancel_token.cancel()
        self._log(
            logging.INFO,
            "Stream cancelled",
            session_id=session.id,
            fragment_count=session.fragment_count,
            buffered_chars=len(session.buffer),
        )
        self._archive(session)
        return True

    def clear(self) -> None:
        """清空对话、系统指令与缓冲区；在途会话被取消且不归档。"""
        session = self._session
        if session is not None and not session.status.is_terminal:
            session.status = StreamStatus.CANCELLED
            if session.cancel_token is not None:
                session.cancel_token.cancel()
            session.cancel_token = None
            session.buffer = ""
        self._messages = []
        self._system_directive = ""
        self._state = EngineState.IDLE
        self.last_error = None
        self._render.reset()
        self._set_loading(False)
        self._notify("messages")
        self._notify("directive")
        self._log(logging.INFO, "Conversation cleared")

    def set_system_directive(self, value: Any) -> bool:
        """设置系统指令。

        只有在对话为空且尚未设置指令时才会生效；非字符串输入与重复设置
        都被静默忽略。
        """
        if not isinstance(value, str) or not value:
            self._ignored("DIRECTIVE_REJECTED")
            return False
        if not self.can_edit_directive:
            self._ignored("DIRECTIVE_REJECTED")
            return False
        self._system_directive = value
        self._notify("directive")
        return True

    def set_directive_editing(self, editing: bool) -> bool:
        """进入或退出系统指令编辑状态；编辑期间 submit / retry / force_assistant 不生效。"""
        if editing and not self.can_edit_directive:
            self._ignored("DIRECTIVE_REJECTED")
            return False
        if self._directive_editing != editing:
            self._directive_editing = editing
            self._notify("directive")
        return True

    # ---- 持久化 ----

    def restore(self) -> None:
        """从存储恢复对话；存储缺失或数据损坏时保持空状态。"""
        if self._store is None:
            return
        conv = self._store.load()
        self._messages = list(conv.messages)
        self._system_directive = conv.system_directive
        self._notify("messages")
        self._notify("directive")
        self._log(logging.INFO, "Conversation restored", message_count=len(self._messages))

    def persist(self) -> None:
        """把已归档的对话与系统指令写回存储；在途缓冲区不会被保存。"""
        if self._store is None:
            return
        self._store.save(self.snapshot())
        self._log(logging.INFO, "Conversation persisted", message_count=len(self._messages))

    # ---- 请求与读流 ----

    async def _request_with_latest_messages(self) -> StreamSession:
        session = StreamSession(cancel_token=CancelToken())
        self._session = session
        self._state = EngineState.AWAITING_STREAM
        self.last_error = None
        self._render.reset()
        self._set_loading(True)

        history = list(self._messages)
        directive = self._system_directive
        self._log(
            logging.INFO,
            "Calling transport (stream)",
            session_id=session.id,
            transport=getattr(self._transport, "name", type(self._transport).__name__),
            message_count=len(history) + (1 if directive else 0),
        )

        stream = None
        try:
            _, stream = await self._transport.open_stream(
                history, directive, self._clock(), session.cancel_token
            )
            if not self._owns(session):
                return session
            session.status = StreamStatus.STREAMING
            self._state = EngineState.STREAMING
            async with contextlib.aclosing(decode_fragments(stream)) as fragments:
                async for fragment in fragments:
                    if not self._owns(session):
                        break
                    self._apply_fragment(session, fragment)
        except BusinessError as e:
            self._fail(session, e)
            return session
        except asyncio.CancelledError:
            if self._owns(session):
                self.cancel()
            raise
        except Exception as e:
            logger.exception("Unexpected failure while reading stream")
            self._fail(session, StreamReadError(code="STREAM_READ_ERROR", message=str(e) or type(e).__name__))
            return session
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self._owns(session):
            session.status = StreamStatus.COMPLETED
            self._log(
                logging.INFO,
                "Stream completed",
                session_id=session.id,
                fragment_count=session.fragment_count,
            )
            self._archive(session)
        return session

    def _apply_fragment(self, session: StreamSession, fragment: str) -> bool:
        if not fragment:
            return False
        # 上游常重复发送单独的换行，缓冲区已以换行结尾时丢弃
        if fragment == "\n" and session.buffer.endswith("\n"):
            return False
        session.buffer += fragment
        session.fragment_count += 1
        self._notify("buffer")
        try:
            self._render()
        except Exception:
            logger.exception("Render callback failed")
        return True

    def _archive(self, session: StreamSession) -> None:
        self._state = EngineState.ARCHIVING
        if session.buffer:
            self._messages.append(Message(role="assistant", content=session.buffer))
            session.buffer = ""
            self._notify("messages")
        session.cancel_token = None
        self._state = EngineState.IDLE
        self._set_loading(False)

    def _fail(self, session: StreamSession, error: BusinessError) -> None:
        if not self._owns(session):
            self._log(logging.DEBUG, "Ignoring failure of stale session", session_id=session.id, code=error.code)
            return
        session.status = StreamStatus.ERRORED
        session.error = error
        session.buffer = ""
        session.cancel_token = None
        self.last_error = error
        self._state = EngineState.IDLE
        self._set_loading(False)
        self._log(
            logging.ERROR,
            "Stream failed",
            session_id=session.id,
            code=error.code,
            error=error.message,
            http_status=error.http_status,
            fragment_count=session.fragment_count,
        )
        self._notify("error")

    def _owns(self, session: StreamSession) -> bool:
        return session is self._session and not session.status.is_terminal

    def _is_idle(self) -> bool:
        return self._session is None or self._session.status.is_terminal

    # ---- 辅助方法 ----

    def _set_loading(self, loading: bool) -> None:
        if self._loading != loading:
            self._loading = loading
            self._notify("loading")

    def _notify(self, kind: EventKind) -> None:
        event = EngineEvent(kind=kind, engine=self)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Engine listener failed", extra={"extra": {"kind": kind}})

    def _ignored(self, code: str) -> None:
        self._log(logging.DEBUG, "Transition ignored", code=code, state=self._state.value)

    @staticmethod
    def _log(level: int, message: str, **fields: Any) -> None:
        payload: Dict[str, Any] = dict(fields)
        logger.log(level, message, extra={"extra": payload})
