"""Git capabilities."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agent_toolgate.application.errors import CommandError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import (
    GateMode,
    ToolContext,
    ToolSpec,
    outcome_from_process,
)
from agent_toolgate.infrastructure.logging import get_logger
from agent_toolgate.infrastructure.process import ProcessResult, run_process

logger = get_logger(__name__)


async def _git(*args: str) -> ProcessResult:
    logger.info("Running git", subcommand=args[0])
    try:
        return await run_process("git", *args)
    except OSError as e:
        msg = f"Failed to run git {args[0]}: {e}"
        raise CommandError(msg) from e


async def git_status(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    result = await _git("status", "--porcelain")
    text = None
    if result.succeeded:
        if result.stdout.strip():
            text = f"Git status:\n{result.stdout}"
        else:
            text = "Git working directory is clean"
    return outcome_from_process(result, "git status", text)


async def git_diff(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    result = await _git("diff")
    text = None
    if result.succeeded:
        if result.stdout.strip():
            text = f"Git diff:\n{result.stdout}"
        else:
            text = "No changes to show"
    return outcome_from_process(result, "git diff", text)


async def git_commit(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    message = arguments["message"]
    result = await _git("commit", "-m", message)
    return outcome_from_process(result, f"git commit -m {message!r}")


async def git_add(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """ファイルをステージする（未指定時はカレントディレクトリ全体）."""
    files = list(arguments.get("files") or (".",))
    result = await _git("add", "--", *files)
    text = f"Added {len(files)} files to git" if result.succeeded else None
    return outcome_from_process(result, f"git add {' '.join(files)}", text)


SPECS = {
    Capability.GIT_STATUS: ToolSpec(
        handler=git_status, describe=lambda args: "git status --porcelain"
    ),
    Capability.GIT_DIFF: ToolSpec(handler=git_diff, describe=lambda args: "git diff"),
    Capability.GIT_COMMIT: ToolSpec(
        handler=git_commit,
        describe=lambda args: f"git commit -m {args['message']!r}",
        gate=GateMode.CONFIRM,
        prompt=lambda args: f"Commit with message: '{args['message']}' ? (y/n): ",
        cancel_message="Git commit cancelled by user",
    ),
    Capability.GIT_ADD: ToolSpec(
        handler=git_add,
        describe=lambda args: f"git add {' '.join(args.get('files') or ('.',))}",
        gate=GateMode.CONFIRM,
        prompt=lambda args: (
            f"Add files: {', '.join(args.get('files') or ('.',))} ? (y/n): "
        ),
        cancel_message="Git add cancelled by user",
    ),
}
