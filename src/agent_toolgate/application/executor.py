"""Capability dispatch: gate, execute and audit one tool intent."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from agent_toolgate.application.audit import preview
from agent_toolgate.application.errors import (
    CommandBlockedError,
    StorageError,
    ToolgateError,
)
from agent_toolgate.application.models import (
    ApprovalDecision,
    CommandLogRecord,
    CommandStatus,
    ToolIntent,
    ToolOutcome,
)
from agent_toolgate.application.policy import GateResult
from agent_toolgate.application.tools import REGISTRY, check_registry
from agent_toolgate.application.tools.base import (
    TOOL_NAME_KEY,
    GateMode,
    ToolContext,
    ToolSpec,
)
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

NO_INTENT_MESSAGE = "No tool matched the request"


def _handler_arguments(intent: ToolIntent) -> Mapping[str, Any]:
    if intent.tool_name is None:
        return intent.arguments
    return {**intent.arguments, TOOL_NAME_KEY: intent.tool_name}


def _failed_outcome(message: str, summary: str, started: float) -> ToolOutcome:
    return ToolOutcome(
        message,
        summary=summary,
        succeeded=False,
        error_message=message,
        duration_ms=int((time.monotonic() - started) * 1000),
    )


class ToolExecutor:
    """
    ツール呼び出し意図を実行する.

    1. レジストリから ToolSpec を引く
    2. ゲート方式に応じてポリシー評価・利用者確認を行う
    3. 承認されたらハンドラーを実行する
    4. ゲートを通過した試行は結果に関わらず1件だけ監査レコードを残す

    ハンドラーの例外（ToolgateError とそれ以外の Exception）は結果テキストに変換する。
    StorageError（監査ストア障害）はターン全体の失敗として呼び出し元に伝播する。
    """

    def __init__(self, registry: dict[Any, ToolSpec] | None = None) -> None:
        """
        Initialize ToolExecutor.

        Args:
            registry: ケーパビリティ → ToolSpec（None の場合は組み込みレジストリ）

        Raises:
            ValueError: レジストリに未登録のケーパビリティがある場合
        """
        if registry is None:
            registry = REGISTRY
        else:
            check_registry(registry)
        self._registry = registry

    async def execute(self, intent: ToolIntent, ctx: ToolContext) -> ToolOutcome:
        """
        意図を1回実行する.

        Args:
            intent: 正規化済みのツール呼び出し意図
            ctx: セッションコンテキスト

        Returns:
            実行結果（拒否・ブロック・ハンドラー失敗も結果テキストとして返す）

        Raises:
            StorageError: 監査レコードの書き込みに失敗した場合
        """
        spec = self._registry.get(intent.capability)
        if spec is None:
            logger.warning("No handler for capability", capability=intent.capability)
            return ToolOutcome(NO_INTENT_MESSAGE, summary="", succeeded=False)

        arguments = _handler_arguments(intent)
        mode = spec.gate_mode_for(arguments)
        if mode is GateMode.NONE:
            return await self._run_handler(spec, intent, arguments, ctx)

        description = spec.describe(arguments)
        gate_result = self._evaluate_gate(spec, mode, arguments, ctx)

        if gate_result.decision is ApprovalDecision.POLICY_BLOCKED:
            error = CommandBlockedError(gate_result.reason or "Command blocked by policy")
            self._record(
                ctx,
                description,
                gate_result,
                CommandStatus.BLOCKED,
                error_message=gate_result.reason,
            )
            return ToolOutcome(
                str(error),
                summary=description,
                succeeded=False,
                error_message=gate_result.reason,
            )

        if not gate_result.approved:
            self._record(ctx, description, gate_result, CommandStatus.REJECTED)
            cancel_message = spec.cancel_message or "Cancelled by user"
            return ToolOutcome(cancel_message, summary=description, succeeded=False)

        try:
            outcome = await self._run_handler(spec, intent, arguments, ctx)
        except asyncio.CancelledError:
            self._record(
                ctx,
                description,
                gate_result,
                CommandStatus.FAILED,
                error_message="Execution cancelled",
            )
            raise

        self._record(
            ctx,
            description,
            gate_result,
            CommandStatus.SUCCEEDED if outcome.succeeded else CommandStatus.FAILED,
            outcome=outcome,
        )
        return outcome

    def _evaluate_gate(
        self,
        spec: ToolSpec,
        mode: GateMode,
        arguments: Mapping[str, Any],
        ctx: ToolContext,
    ) -> GateResult:
        if mode is GateMode.COMMAND_POLICY:
            return ctx.gate.check_command(arguments["command"])
        if spec.prompt is None:
            return ctx.gate.confirm(f"{spec.describe(arguments)} (y/n): ")
        return ctx.gate.confirm(spec.prompt(arguments))

    async def _run_handler(
        self,
        spec: ToolSpec,
        intent: ToolIntent,
        arguments: Mapping[str, Any],
        ctx: ToolContext,
    ) -> ToolOutcome:
        started = time.monotonic()
        try:
            outcome = await spec.handler(arguments, ctx)
        except StorageError:
            raise
        except ToolgateError as e:
            logger.warning(
                "Tool handler failed",
                capability=intent.capability.value,
                session_id=ctx.session_id,
                error=str(e),
            )
            return _failed_outcome(str(e), spec.describe(arguments), started)
        except Exception as e:
            # 想定外の例外も失敗した試行として扱う
            logger.exception(
                "Tool handler raised an unexpected error",
                capability=intent.capability.value,
                session_id=ctx.session_id,
            )
            message = f"Tool execution failed: {type(e).__name__}: {e}"
            return _failed_outcome(message, spec.describe(arguments), started)

        if outcome.duration_ms is None:
            outcome = replace(
                outcome, duration_ms=int((time.monotonic() - started) * 1000)
            )
        logger.debug(
            "Tool handler finished",
            capability=intent.capability.value,
            session_id=ctx.session_id,
            succeeded=outcome.succeeded,
        )
        return outcome

    def _record(
        self,
        ctx: ToolContext,
        command: str,
        gate_result: GateResult,
        status: CommandStatus,
        *,
        outcome: ToolOutcome | None = None,
        error_message: str | None = None,
    ) -> None:
        if outcome is not None:
            if error_message is None:
                error_message = outcome.error_message
            if error_message is None and not outcome.succeeded:
                error_message = preview(outcome.result_text)
        ctx.audit.record(
            CommandLogRecord(
                session_id=ctx.session_id,
                command=command,
                source=ctx.source,
                requires_approval=gate_result.requires_approval,
                approved=gate_result.approved,
                status=status,
                exit_code=outcome.exit_code if outcome else None,
                duration_ms=outcome.duration_ms if outcome else None,
                stdout_preview=outcome.stdout_preview if outcome else None,
                stderr_preview=outcome.stderr_preview if outcome else None,
                error_message=error_message,
            )
        )
