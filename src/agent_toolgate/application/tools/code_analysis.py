"""Simple source metrics capability."""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from agent_toolgate.application.errors import FileOperationError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import ToolContext, ToolSpec

# 行頭（インデント・修飾子可）の定義キーワードを数える
_DEFINITION_PATTERNS = {
    "Functions": re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:def|fn)\s", re.M),
    "Classes": re.compile(r"^\s*class\s", re.M),
    "Structs": re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?struct\s", re.M),
    "Enums": re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?enum\s", re.M),
    "Impls": re.compile(r"^\s*impl\b", re.M),
}

_BRANCH_PATTERN = re.compile(r"\b(?:if|elif|else if|for|while|match|case|except|catch)\b")


def analyze_source(path: str, content: str) -> str:
    """行数・定義数・おおよその複雑度を整形して返す."""
    lines = content.splitlines()
    non_empty = sum(1 for line in lines if line.strip())
    counts = {
        name: len(pattern.findall(content))
        for name, pattern in _DEFINITION_PATTERNS.items()
    }
    branches = len(_BRANCH_PATTERN.findall(content))
    complexity = counts["Functions"] + branches + 1

    report = [
        f"File: {path}",
        f"Total lines: {len(lines)}",
        f"Non-empty lines: {non_empty}",
        *(f"{name}: {count}" for name, count in counts.items()),
        f"Estimated complexity: {complexity}",
    ]
    return "\n".join(report)


async def code_analyze(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    path = arguments["path"]
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        msg = f"Failed to read file {path}: {e}"
        raise FileOperationError(msg) from e
    return ToolOutcome(analyze_source(path, content), summary=f"code_analyze {path}")


SPECS = {
    Capability.CODE_ANALYZE: ToolSpec(
        handler=code_analyze, describe=lambda args: f"code_analyze {args['path']}"
    ),
}
