"""Per-session todo list capabilities."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agent_toolgate.application.errors import CommandError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import ToolContext, ToolSpec


async def todo_add(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    description = arguments["description"]
    ctx.storage.add_todo(ctx.session_id, description)
    return ToolOutcome(f"Added todo: {description}", summary="todo add")


async def todo_list(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    todos = ctx.storage.list_todos(ctx.session_id)
    if not todos:
        return ToolOutcome("No todos found", summary="todo list")
    lines = [f"{i}. {description}" for i, description in enumerate(todos, start=1)]
    return ToolOutcome("Current todos:\n" + "\n".join(lines), summary="todo list")


async def todo_remove(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """1始まりの番号で TODO を削除する."""
    index = arguments["index"]
    removed = ctx.storage.delete_todo(ctx.session_id, index)
    if removed is None:
        msg = f"Invalid todo index: {index}"
        raise CommandError(msg)
    return ToolOutcome(f"Removed todo: {removed}", summary="todo remove")


async def todo_clear(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    count = ctx.storage.clear_todos(ctx.session_id)
    return ToolOutcome(f"Cleared {count} todos", summary="todo clear")


SPECS = {
    Capability.TODO_ADD: ToolSpec(
        handler=todo_add, describe=lambda args: f"todo add {args['description']}"
    ),
    Capability.TODO_LIST: ToolSpec(handler=todo_list, describe=lambda args: "todo list"),
    Capability.TODO_REMOVE: ToolSpec(
        handler=todo_remove, describe=lambda args: f"todo remove {args['index']}"
    ),
    Capability.TODO_CLEAR: ToolSpec(
        handler=todo_clear, describe=lambda args: "todo clear"
    ),
}
