"""Shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from agent_toolgate.application.audit import AuditRecorder
from agent_toolgate.application.models import ExecutionPolicy
from agent_toolgate.application.policy import ApprovalGate
from agent_toolgate.application.tools.base import ToolContext
from agent_toolgate.infrastructure.storage import Storage


class ScriptedApprover:
    """あらかじめ決めた回答を順に返す承認者（表示されたプロンプトを記録する）."""

    def __init__(self, *answers: str) -> None:
        self.answers = list(answers)
        self.prompts: list[str] = []

    def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else ""


@pytest.fixture
def storage(tmp_path_factory: pytest.TempPathFactory) -> Iterator[Storage]:
    """一時ディレクトリ上の SQLite ストア."""
    store = Storage(tmp_path_factory.mktemp("db") / "toolgate.db")
    yield store
    store.close()


@pytest.fixture
def make_context(storage: Storage) -> Callable[..., ToolContext]:
    """ToolContext を組み立てるファクトリ."""

    def factory(
        approver: ScriptedApprover | None = None,
        policy: ExecutionPolicy | None = None,
        session_id: str = "session-1",
        **kwargs: Any,
    ) -> ToolContext:
        return ToolContext(
            storage=storage,
            session_id=session_id,
            gate=ApprovalGate(policy, approver=approver),
            audit=AuditRecorder(storage),
            **kwargs,
        )

    return factory
