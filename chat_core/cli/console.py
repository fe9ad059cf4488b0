"""终端对话控制台。

逐行读取输入并驱动 ConversationEngine：
- 普通文本: 发送并流式打印回复，生成中按 Ctrl-C 停止（已收到的内容会保留）。
- /retry: 重新生成最后一条回复。
- /clear: 清空对话与系统指令。
- /system <text>: 在对话开始前设置系统指令。
- /force <user> || <assistant>: 直接写入一问一答，不请求接口。
- /quit: 保存并退出。
"""

import asyncio
import contextlib
import signal
import sys
from typing import Callable, Optional, TextIO, Tuple

from chat_core.api.service import create_engine
from chat_core.domain.models import EngineEvent
from chat_core.engine.conversation_engine import ConversationEngine
from chat_core.infrastructure.logging.logger import logger

FORCE_SEPARATOR = "||"


def parse_command(line: str) -> Tuple[str, str]:
    """把输入行拆成 (命令, 参数)；普通文本的命令为 "send"。"""
    text = line.rstrip("\r\n")
    if not text.startswith("/"):
        return "send", text
    name, _, arg = text[1:].partition(" ")
    return name.lower(), arg.strip()


class ConsoleRenderer:
    """把引擎事件增量打印到终端。"""

    def __init__(self, engine: ConversationEngine, out: TextIO = sys.stdout):
        self._engine = engine
        self._out = out
        self._printed = 0

    def __call__(self, event: EngineEvent) -> None:
        if event.kind == "buffer":
            text = event.engine.buffer
            self._out.write(text[self._printed:])
            self._printed = len(text)
        elif event.kind == "loading" and not event.engine.loading:
            if self._printed:
                self._out.write("\n")
            self._printed = 0
        elif event.kind == "error" and event.engine.last_error is not None:
            self._out.write(f"\n[error] {event.engine.last_error.message}\n")

    def flush(self) -> None:
        self._out.flush()


class Console:
    def __init__(
        self,
        engine: ConversationEngine,
        read_line: Optional[Callable[[str], str]] = None,
        out: TextIO = sys.stdout,
    ):
        self._engine = engine
        self._read_line = read_line or input
        self._out = out
        self._renderer = ConsoleRenderer(engine, out)
        engine.subscribe(self._renderer)

    @property
    def renderer(self) -> ConsoleRenderer:
        return self._renderer

    async def handle(self, line: str) -> bool:
        """处理一行输入；返回 False 表示退出。"""
        command, arg = parse_command(line)
        if command == "quit":
            return False
        if command == "send":
            await self._stream(self._engine.submit(arg))
        elif command == "retry":
            await self._stream(self._engine.retry())
        elif command == "clear":
            self._engine.clear()
            self._out.write("[cleared]\n")
        elif command == "system":
            if not self._engine.set_system_directive(arg):
                self._out.write("[system directive can only be set once, before the conversation starts]\n")
        elif command == "force":
            user_text, _, assistant_text = arg.partition(FORCE_SEPARATOR)
            if not self._engine.force_assistant(user_text.strip(), assistant_text.strip()):
                self._out.write(f"[usage] /force <user> {FORCE_SEPARATOR} <assistant>\n")
        else:
            self._out.write(f"[unknown command] /{command}\n")
        return True

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self._engine.restore()
        for message in self._engine.messages:
            self._out.write(f"{message.role}: {message.content}\n")
        try:
            while True:
                try:
                    line = await loop.run_in_executor(None, self._read_line, "> ")
                except EOFError:
                    break
                if not await self.handle(line):
                    break
        finally:
            self._engine.persist()

    async def _stream(self, request) -> None:
        loop = asyncio.get_running_loop()
        installed = False
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, self._engine.cancel)
            installed = True
        try:
            await request
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)
            self._renderer.flush()


def main() -> None:
    console: Optional[Console] = None

    def scroll() -> None:
        if console is not None:
            console.renderer.flush()

    engine = create_engine(on_render=scroll)
    console = Console(engine)
    logger.info("Console started")
    try:
        asyncio.run(console.run())
    except KeyboardInterrupt:
        sys.stdout.write("\n")


if __name__ == "__main__":
    main()
