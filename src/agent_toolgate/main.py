"""Main entry point for the agent-toolgate application."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable

from rich.console import Console

from agent_toolgate.application.chat import ChatService
from agent_toolgate.application.errors import ConfigError, RemoteToolError
from agent_toolgate.application.policy import ApprovalGate
from agent_toolgate.infrastructure.config import Config, get_config
from agent_toolgate.infrastructure.llm_client import LLMClient
from agent_toolgate.infrastructure.logging import configure_logging, get_logger
from agent_toolgate.infrastructure.mcp_client import McpToolClient
from agent_toolgate.infrastructure.storage import Storage
from agent_toolgate.presentation.console import ChatConsole, ConsoleApprover

logger = get_logger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop, on_signal: Callable[[], None]
) -> None:
    # add_signal_handler がない環境（Windows）では signal.signal で代用する
    try:
        for sig in _SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        for sig in _SHUTDOWN_SIGNALS:
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(on_signal))


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    try:
        for sig in _SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)
    except NotImplementedError:
        for sig in _SHUTDOWN_SIGNALS:
            signal.signal(sig, signal.SIG_DFL)


async def _connect_remote_tools(
    config: Config,
) -> tuple[McpToolClient | None, list[tuple[str, str | None]]]:
    """MCP が有効ならクライアントと公開ツール一覧を返す."""
    if not config.mcp_enabled:
        return None, []

    client = McpToolClient(config.mcp_server_url, timeout=config.mcp_timeout)
    try:
        return client, list(await client.list_tools())
    except RemoteToolError as e:
        # 一覧が取れなくても呼び出しは試せる
        logger.warning("MCP tools are unavailable", error=str(e))
        return client, []


async def _cancel(task: asyncio.Task[object] | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def main() -> None:
    """アプリケーションのメインエントリポイント."""
    # ロギングの設定値も Config から読むため先に読み込む
    try:
        config = get_config()
    except ConfigError as e:
        print(e, file=sys.stderr)
        sys.exit(1)
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )
    logger.info(
        "Starting agent-toolgate...",
        provider=config.api_provider,
        model=config.model_name,
        database=str(config.database_path),
    )

    stop_requested = asyncio.Event()

    def request_stop() -> None:
        # 2回目以降のシグナルは無視する
        if stop_requested.is_set():
            return
        logger.info("Received shutdown signal, stopping the REPL...")
        stop_requested.set()

    loop = asyncio.get_running_loop()
    _install_signal_handlers(loop, request_stop)

    storage: Storage | None = None
    llm: LLMClient | None = None
    repl_task: asyncio.Task[None] | None = None
    stop_task: asyncio.Task[bool] | None = None

    try:
        storage = Storage(config.database_path)
        console = Console()
        llm = LLMClient(
            config.api_provider,
            config.api_key,
            config.resolved_api_base_url,
            config.model_name,
            timeout=config.llm_timeout,
            cache_ttl=config.llm_cache_ttl,
        )
        remote_tools, remote_tool_listing = await _connect_remote_tools(config)

        chat = ChatService(
            llm,
            storage,
            ApprovalGate(config.exec_policy(), approver=ConsoleApprover(console)),
            model_name=config.model_name,
            remote_tools=remote_tools,
            remote_tool_listing=remote_tool_listing,
            web_search_enabled=config.web_search_enabled,
            custom_commands=config.custom_commands,
            http_timeout=config.http_timeout,
            web_search_url=config.web_search_url,
            command_timeout=config.command_timeout,
            guidelines_path=config.guidelines_path,
        )
        logger.info("Chat service ready", remote_tools=len(remote_tool_listing))

        # REPL の終了とシグナルのどちらか早い方で抜ける
        repl_task = asyncio.create_task(ChatConsole(chat, console).run())
        stop_task = asyncio.create_task(stop_requested.wait())
        done, _ = await asyncio.wait(
            [repl_task, stop_task], return_when=asyncio.FIRST_COMPLETED
        )
        if repl_task in done:
            repl_task.result()

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        await _cancel(repl_task)
        await _cancel(stop_task)

        if llm is not None:
            try:
                await llm.aclose()
            except Exception:
                logger.exception("Failed to close LLM client")
        if storage is not None:
            storage.close()

        _remove_signal_handlers(loop)
        logger.info("Shutdown complete")
        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
