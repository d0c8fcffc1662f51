"""Asynchronous child-process runner."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from pathlib import Path

from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    """子プロセスの実行結果."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def succeeded(self) -> bool:
        """終了コードが 0 かどうか."""
        return self.exit_code == 0


async def run_process(
    *args: str,
    cwd: str | Path | None = None,
    timeout: float | None = None,
) -> ProcessResult:
    """
    子プロセスを起動し、終了まで待って標準出力・標準エラーを回収する.

    待機中のタスクがキャンセルされた場合（タイムアウト含む）は子プロセスを強制終了する。

    Args:
        *args: 実行するプログラムと引数
        cwd: 作業ディレクトリ
        timeout: タイムアウト（秒）。None の場合は無制限

    Returns:
        実行結果

    Raises:
        OSError: プログラムを起動できなかった場合
        TimeoutError: タイムアウトした場合
    """
    started = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    logger.debug("Spawned child process", pid=process.pid, program=args[0])

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except (asyncio.CancelledError, TimeoutError):
        if process.returncode is None:
            logger.warning("Killing child process", pid=process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        raise

    return ProcessResult(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_ms=int((time.monotonic() - started) * 1000),
    )


async def run_shell(command: str, *, timeout: float | None = None) -> ProcessResult:
    """シェル（``sh -c``）経由でコマンドを実行する."""
    return await run_process("sh", "-c", command, timeout=timeout)
