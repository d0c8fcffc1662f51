"""Tests for capability dispatch, gating and auditing."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from agent_toolgate.application.errors import CommandError, StorageError
from agent_toolgate.application.executor import ToolExecutor
from agent_toolgate.application.intent import normalize
from agent_toolgate.application.models import (
    Capability,
    CommandStatus,
    ExecutionPolicy,
    ToolIntent,
    ToolOutcome,
)
from agent_toolgate.application.tools import REGISTRY, check_registry
from agent_toolgate.application.tools.base import ToolContext
from agent_toolgate.infrastructure.process import ProcessResult
from agent_toolgate.infrastructure.storage import Storage

from conftest import ScriptedApprover

ContextFactory = Callable[..., ToolContext]


class TestRegistry:
    """レジストリのテスト."""

    def test_every_capability_registered(self) -> None:
        """全ケーパビリティにハンドラーが登録されていることを確認する."""
        assert set(REGISTRY) == set(Capability)

    def test_incomplete_registry_rejected(self) -> None:
        """未登録のケーパビリティがあるとエラーになることを確認する."""
        partial = {k: v for k, v in REGISTRY.items() if k is not Capability.GIT_DIFF}
        with pytest.raises(ValueError, match="git_diff"):
            check_registry(partial)
        with pytest.raises(ValueError):
            ToolExecutor(partial)


class TestScenarios:
    """代表的な利用シナリオのテスト."""

    @pytest.mark.asyncio
    async def test_allow_listed_command_runs_without_prompt(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """許可リストのコマンドが確認なしで実行され、成功として記録されることを確認する."""
        approver = ScriptedApprover()
        ctx = make_context(approver, ExecutionPolicy(allowed_commands=("echo",)))
        intent = normalize("[RUN_COMMAND echo audit-log]")
        assert intent is not None

        outcome = await ToolExecutor().execute(intent, ctx)

        assert "audit-log" in outcome.result_text
        assert approver.prompts == []
        record = storage.load_latest_command_log("session-1")
        assert record is not None
        assert record.status is CommandStatus.SUCCEEDED
        assert record.approved
        assert not record.requires_approval
        assert record.exit_code == 0
        assert record.source == "model"
        assert record.stdout_preview is not None
        assert "audit-log" in record.stdout_preview

    @pytest.mark.asyncio
    async def test_rejected_write_leaves_no_file(
        self,
        make_context: ContextFactory,
        storage: Storage,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """書き込みを拒否するとファイルが作られないことを確認する."""
        monkeypatch.chdir(tmp_path)
        approver = ScriptedApprover("n")
        intent = normalize("[WRITE_FILE test.txt hello]")
        assert intent is not None

        outcome = await ToolExecutor().execute(intent, make_context(approver))

        assert outcome.result_text == "File write cancelled by user"
        assert not (tmp_path / "test.txt").exists()
        assert approver.prompts == ["Write to file test.txt? (y/n): "]
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.REJECTED
        assert record.requires_approval
        assert not record.approved

    @pytest.mark.asyncio
    async def test_dangerous_command_blocked_before_prompt(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """危険なコマンドが確認前に拒否され、実行されないことを確認する."""
        approver = ScriptedApprover("y")
        intent = normalize("[RUN_COMMAND rm -rf /]")
        assert intent is not None

        with patch(
            "agent_toolgate.application.tools.shell.run_shell", new=AsyncMock()
        ) as run_shell:
            outcome = await ToolExecutor().execute(intent, make_context(approver))

        run_shell.assert_not_called()
        assert approver.prompts == []
        assert not outcome.succeeded
        assert outcome.result_text.startswith("Command execution error: ")
        assert "rm -rf" in outcome.result_text
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.BLOCKED
        assert not record.requires_approval
        assert not record.approved

    @pytest.mark.asyncio
    async def test_json_todo_add(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """JSON の todo add が TODO を追加し、監査対象外であることを確認する."""
        intent = normalize(
            '{"tool":"todo","action":"add","description":"buy milk"}'
        )
        assert intent == ToolIntent(Capability.TODO_ADD, {"description": "buy milk"})

        outcome = await ToolExecutor().execute(intent, make_context())

        assert outcome.result_text == "Added todo: buy milk"
        assert storage.list_todos("session-1") == ["buy milk"]
        assert storage.load_latest_command_log() is None


class TestGating:
    """ゲートと監査のテスト."""

    @pytest.mark.asyncio
    async def test_blocked_prefix_recorded_as_blocked(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """拒否リストのコマンドが blocked として記録されることを確認する."""
        ctx = make_context(
            ScriptedApprover("y"),
            ExecutionPolicy(allowed_commands=("git",), blocked_commands=("git push",)),
        )
        outcome = await ToolExecutor().execute(
            ToolIntent(Capability.RUN_COMMAND, {"command": "git push origin"}), ctx
        )

        assert outcome.result_text == (
            "Command execution error: Command 'git push origin' is blocked by exec policy."
        )
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.BLOCKED
        assert record.error_message == "Command 'git push origin' is blocked by exec policy."

    @pytest.mark.asyncio
    async def test_rejected_command(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """拒否されたコマンドが実行されず rejected として記録されることを確認する."""
        with patch(
            "agent_toolgate.application.tools.shell.run_shell", new=AsyncMock()
        ) as run_shell:
            outcome = await ToolExecutor().execute(
                ToolIntent(Capability.RUN_COMMAND, {"command": "pwd"}),
                make_context(ScriptedApprover("n")),
            )

        run_shell.assert_not_called()
        assert outcome.result_text == "Command execution cancelled by user"
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.REJECTED

    @pytest.mark.asyncio
    async def test_failed_command_returns_stderr(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """非ゼロ終了のコマンドは標準エラーを返し failed として記録されることを確認する."""
        result = ProcessResult(exit_code=2, stdout="", stderr="no such file", duration_ms=3)
        with patch(
            "agent_toolgate.application.tools.shell.run_shell",
            new=AsyncMock(return_value=result),
        ):
            outcome = await ToolExecutor().execute(
                ToolIntent(Capability.RUN_COMMAND, {"command": "ls missing"}),
                make_context(ScriptedApprover("y")),
            )

        assert outcome.result_text == "no such file"
        assert not outcome.succeeded
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.FAILED
        assert record.exit_code == 2
        assert record.stderr_preview == "no such file"
        assert record.duration_ms == 3

    @pytest.mark.asyncio
    async def test_handler_error_becomes_result_text(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """ハンドラーの例外が結果テキストに変換されることを確認する."""
        with patch(
            "agent_toolgate.application.tools.shell.run_shell",
            new=AsyncMock(side_effect=OSError("sh not found")),
        ):
            outcome = await ToolExecutor().execute(
                ToolIntent(Capability.RUN_COMMAND, {"command": "pwd"}),
                make_context(ScriptedApprover("y")),
            )

        assert not outcome.succeeded
        assert outcome.result_text.startswith("Command execution error: Failed to execute")
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.FAILED
        assert record.error_message == outcome.result_text

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_recorded(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """ToolgateError 以外の例外も失敗として結果テキストと記録になることを確認する."""
        handler = AsyncMock(side_effect=RuntimeError("decoder crashed"))
        registry = {
            **REGISTRY,
            Capability.IMAGE_RESIZE: replace(
                REGISTRY[Capability.IMAGE_RESIZE], handler=handler
            ),
        }
        intent = ToolIntent(
            Capability.IMAGE_RESIZE,
            {"input_path": "a.png", "output_path": "b.png", "width": 1, "height": 1},
        )

        outcome = await ToolExecutor(registry).execute(
            intent, make_context(ScriptedApprover("y"))
        )

        assert not outcome.succeeded
        assert outcome.result_text == "Tool execution failed: RuntimeError: decoder crashed"
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.FAILED
        assert record.approved
        assert record.error_message == outcome.result_text

    @pytest.mark.asyncio
    async def test_non_ascii_header_recorded_as_failure(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """送信できないヘッダー値が失敗結果になり、記録が残ることを確認する."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200))
        intent = ToolIntent(
            Capability.API_TEST,
            {
                "method": "POST",
                "url": "http://api.example/items",
                "headers": '{"X-Name": "é"}',
                "body": "{}",
            },
        )

        outcome = await ToolExecutor().execute(
            intent, make_context(ScriptedApprover("y"), http_transport=transport)
        )

        assert not outcome.succeeded
        assert outcome.result_text.startswith("Command execution error: Invalid request headers")
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_url_becomes_result_text(
        self, make_context: ContextFactory
    ) -> None:
        """解析できない URL がエラー結果になることを確認する."""
        intent = normalize('[API_TEST GET http://[::1 "" ""]')
        assert intent is not None

        outcome = await ToolExecutor().execute(intent, make_context())

        assert not outcome.succeeded
        assert "Request failed" in outcome.result_text

    @pytest.mark.asyncio
    async def test_user_source_recorded(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """直接実行の発生元が記録されることを確認する."""
        ctx = make_context(
            policy=ExecutionPolicy(allowed_commands=("echo",)), source="user"
        )
        await ToolExecutor().execute(
            ToolIntent(Capability.RUN_COMMAND, {"command": "echo hi"}), ctx
        )
        record = storage.load_latest_command_log()
        assert record is not None
        assert record.source == "user"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "gated"), [("GET", False), ("get", False), ("POST", True), ("DELETE", True)]
    )
    async def test_api_test_gated_unless_get(
        self,
        make_context: ContextFactory,
        storage: Storage,
        method: str,
        gated: bool,
    ) -> None:
        """api_test は GET 以外のメソッドでのみ確認が必要になることを確認する."""
        handler = AsyncMock(return_value=ToolOutcome("Status: 200 OK", summary="api"))
        registry = {
            **REGISTRY,
            Capability.API_TEST: replace(REGISTRY[Capability.API_TEST], handler=handler),
        }
        approver = ScriptedApprover("n")
        intent = ToolIntent(
            Capability.API_TEST,
            {"method": method, "url": "http://x", "headers": "", "body": ""},
        )

        outcome = await ToolExecutor(registry).execute(intent, make_context(approver))

        if gated:
            handler.assert_not_called()
            assert outcome.result_text == "API test cancelled by user"
            assert len(approver.prompts) == 1
            assert storage.load_latest_command_log() is not None
        else:
            handler.assert_awaited_once()
            assert outcome.result_text == "Status: 200 OK"
            assert approver.prompts == []
            assert storage.load_latest_command_log() is None

    @pytest.mark.asyncio
    async def test_cancellation_recorded(
        self, make_context: ContextFactory, storage: Storage
    ) -> None:
        """実行中のキャンセルが failed として記録されることを確認する."""
        started = asyncio.Event()

        async def slow_shell(command: str, *, timeout: Any = None) -> ProcessResult:
            started.set()
            await asyncio.sleep(10)
            raise AssertionError("unreachable")

        with patch(
            "agent_toolgate.application.tools.shell.run_shell", new=slow_shell
        ):
            task = asyncio.create_task(
                ToolExecutor().execute(
                    ToolIntent(Capability.RUN_COMMAND, {"command": "sleep 10"}),
                    make_context(ScriptedApprover("y")),
                )
            )
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        record = storage.load_latest_command_log()
        assert record is not None
        assert record.status is CommandStatus.FAILED
        assert record.error_message == "Execution cancelled"

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, make_context: ContextFactory) -> None:
        """監査レコードの書き込み失敗が呼び出し元に伝播することを確認する."""
        ctx = make_context(ScriptedApprover("n"))
        with (
            patch.object(ctx.audit, "record", side_effect=StorageError("disk full")),
            pytest.raises(StorageError),
        ):
            await ToolExecutor().execute(
                ToolIntent(Capability.RUN_COMMAND, {"command": "pwd"}), ctx
            )

    @pytest.mark.asyncio
    async def test_invalid_todo_index(self, make_context: ContextFactory) -> None:
        """範囲外の TODO 番号がエラー結果になることを確認する."""
        outcome = await ToolExecutor().execute(
            ToolIntent(Capability.TODO_REMOVE, {"index": 5}), make_context()
        )
        assert not outcome.succeeded
        assert outcome.result_text == str(CommandError("Invalid todo index: 5"))
