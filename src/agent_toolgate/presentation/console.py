"""Terminal front end: approval prompts, rendering and the REPL loop."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

from agent_toolgate.application.chat import ChatReply, ReplyKind
from agent_toolgate.application.errors import IoError, ToolgateError
from agent_toolgate.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_toolgate.application.chat import ChatService, ChatSession

logger = get_logger(__name__)

INPUT_PROMPT = "[bold blue]You:[/] "


class ConsoleApprover:
    """
    承認プロンプトを端末に表示し、利用者の回答を1行読み取る.

    ApprovalGate の approver として渡す。EOF は空の回答（拒否）として扱う。
    """

    def __init__(self, console: Console) -> None:
        """
        Initialize ConsoleApprover.

        Args:
            console: 出力先のコンソール
        """
        self._console = console

    def __call__(self, prompt: str) -> str:
        try:
            return self._console.input(f"[bold yellow]{escape(prompt)}[/]")
        except EOFError:
            return ""


async def read_line(console: Console, prompt: str = INPUT_PROMPT) -> str | None:
    """
    イベントループを止めずに1行読み取る.

    入力待ちはデーモンスレッドで行うため、シャットダウン時に待ち続けることはない。

    Returns:
        入力された行（EOF の場合は None）

    Raises:
        IoError: 端末からの読み取りに失敗した場合
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str | None] = loop.create_future()

    def deliver(line: str | None, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(line)

    def worker() -> None:
        line: str | None = None
        error: BaseException | None = None
        try:
            line = console.input(prompt)
        except EOFError:
            line = None
        except OSError as e:
            error = IoError(f"Failed to read input: {e}")
        except Exception as e:
            error = e
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(deliver, line, error)

    threading.Thread(target=worker, name="console-input", daemon=True).start()
    return await future


def render_reply(console: Console, reply: ChatReply) -> None:
    """応答を種別ごとの書式で表示する."""
    text = escape(reply.text)
    if reply.kind is ReplyKind.ASSISTANT:
        console.print(f"[bold green]Assistant:[/] [green]{text}[/]\n")
    elif reply.kind is ReplyKind.SHELL:
        console.print(f"[bold cyan]Shell:[/] [cyan]{text}[/]")
    elif reply.kind is ReplyKind.ERROR:
        render_error(console, reply.text)
    elif reply.kind is ReplyKind.EXIT:
        console.print(f"[bold yellow]{text}[/]")
    else:
        first, _, rest = reply.text.partition("\n")
        console.print(f"[bold yellow]{escape(first)}[/]")
        if rest:
            console.print(escape(rest))


def render_error(console: Console, message: str) -> None:
    """エラーを赤字で表示する."""
    console.print(f"[bold red]Error:[/] {escape(message)}")


class ChatConsole:
    """対話ループ."""

    def __init__(self, chat: ChatService, console: Console | None = None) -> None:
        """
        Initialize ChatConsole.

        Args:
            chat: チャットサービス
            console: 出力先のコンソール（None の場合は標準出力）
        """
        self._chat = chat
        self.console = console or Console()

    async def run(self) -> None:
        """
        セッションを開始し、終了指示か EOF まで入力を処理し続ける.

        1ターンの失敗（API エラーなど）は表示してループを続ける。
        """
        session = self._chat.create_session()
        self.console.print(
            "[bold yellow]Agent Toolgate - Type /help for commands[/]"
        )
        self.console.print("Quick commands: /help, /exit, /clear, /audit, !shell, @file\n")
        self.console.print(f"[dim]Session: {session.id}[/dim]")

        # 以降のログには session_id が付与される
        with structlog.contextvars.bound_contextvars(session_id=session.id):
            await self._loop(session)

    async def _loop(self, session: ChatSession) -> None:
        while True:
            line = await read_line(self.console)
            if line is None:
                self.console.print("[bold yellow]Session ended.[/]")
                break
            if not line.strip():
                continue

            try:
                reply = await self._chat.handle_input(session, line)
            except ToolgateError as e:
                logger.error("Failed to process input", error=str(e))
                render_error(self.console, str(e))
                continue

            render_reply(self.console, reply)
            if reply.kind is ReplyKind.EXIT:
                break
