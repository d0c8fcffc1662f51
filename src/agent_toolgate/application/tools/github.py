"""GitHub capabilities backed by the ``gh`` CLI."""

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


async def _gh(*args: str) -> ProcessResult:
    try:
        result = await run_process("gh", *args)
    except OSError as e:
        msg = f"Failed to run gh command: {e}"
        raise CommandError(msg) from e
    if not result.succeeded:
        logger.warning("gh command failed", exit_code=result.exit_code)
        msg = f"gh command failed: {result.stderr}"
        raise CommandError(msg)
    return result


async def github_issue(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    title = arguments["title"]
    result = await _gh("issue", "create", "--title", title, "--body", arguments["body"])
    return outcome_from_process(
        result,
        f"gh issue create --title {title!r}",
        f"Issue created: {result.stdout.strip()}",
    )


async def github_pr(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    title = arguments["title"]
    branch = arguments["branch"]
    result = await _gh(
        "pr",
        "create",
        "--title",
        title,
        "--body",
        arguments["body"],
        "--head",
        branch,
    )
    return outcome_from_process(
        result,
        f"gh pr create --title {title!r} --head {branch}",
        f"PR created: {result.stdout.strip()}",
    )


SPECS = {
    Capability.GITHUB_ISSUE: ToolSpec(
        handler=github_issue,
        describe=lambda args: f"gh issue create --title {args['title']!r}",
        gate=GateMode.CONFIRM,
        prompt=lambda args: (
            f"Create GitHub issue '{args['title']}' with body '{args['body']}' ? (y/n): "
        ),
        cancel_message="Issue creation cancelled by user",
    ),
    Capability.GITHUB_PR: ToolSpec(
        handler=github_pr,
        describe=lambda args: (
            f"gh pr create --title {args['title']!r} --head {args['branch']}"
        ),
        gate=GateMode.CONFIRM,
        prompt=lambda args: (
            f"Create PR '{args['title']}' from branch '{args['branch']}' ? (y/n): "
        ),
        cancel_message="PR creation cancelled by user",
    ),
}
