"""Capability handlers and their registry."""

from __future__ import annotations

from agent_toolgate.application.models import Capability
from agent_toolgate.application.tools import (
    code_analysis,
    db,
    filesystem,
    git,
    github,
    image,
    remote,
    shell,
    todo,
    web,
)
from agent_toolgate.application.tools.base import (
    GateMode,
    RemoteToolClient,
    ToolContext,
    ToolHandler,
    ToolSpec,
)


def check_registry(registry: dict[Capability, ToolSpec]) -> None:
    """
    全ケーパビリティが登録されているか検証する.

    Raises:
        ValueError: 未登録のケーパビリティがある場合、または確認が必要なのに
            拒否時メッセージ・プロンプトが未設定の場合
    """
    missing = [c.value for c in Capability if c not in registry]
    if missing:
        msg = f"Capabilities without a handler: {', '.join(missing)}"
        raise ValueError(msg)
    for capability, spec in registry.items():
        if spec.gate is not GateMode.NONE and spec.cancel_message is None:
            msg = f"Gated capability '{capability.value}' has no cancel message"
            raise ValueError(msg)
        if spec.gate is GateMode.CONFIRM and spec.prompt is None:
            msg = f"Capability '{capability.value}' requires a confirmation prompt"
            raise ValueError(msg)


REGISTRY: dict[Capability, ToolSpec] = {
    **shell.SPECS,
    **filesystem.SPECS,
    **todo.SPECS,
    **git.SPECS,
    **github.SPECS,
    **web.SPECS,
    **db.SPECS,
    **code_analysis.SPECS,
    **image.SPECS,
    **remote.SPECS,
}

check_registry(REGISTRY)

__all__ = [
    "REGISTRY",
    "GateMode",
    "RemoteToolClient",
    "ToolContext",
    "ToolHandler",
    "ToolSpec",
    "check_registry",
]
