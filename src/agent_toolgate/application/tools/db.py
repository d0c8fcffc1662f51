"""Read-only SQLite query capability."""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import quote

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from agent_toolgate.application.errors import CommandError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import GateMode, ToolContext, ToolSpec
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

MAX_ROWS = 100


def _run_select(db_path: str, query: str) -> tuple[list[str], list[tuple[Any, ...]], bool]:
    """読み取り専用で接続してクエリを実行し、(列名, 行, 切り詰めたか) を返す."""
    if not Path(db_path).is_file():
        msg = f"Failed to open DB {db_path}: file not found"
        raise CommandError(msg)

    # パス中の ? や # を URI の区切りと解釈させない
    uri = f"file:{quote(str(Path(db_path).resolve()))}?mode=ro"
    engine = create_engine(
        "sqlite://", creator=lambda: sqlite3.connect(uri, uri=True)
    )
    try:
        with engine.connect() as conn:
            # :name をバインド引数として解釈させずにそのまま実行する
            result = conn.exec_driver_sql(query)
            columns = list(result.keys())
            rows = [tuple(row) for row in result.fetchmany(MAX_ROWS + 1)]
    except SQLAlchemyError as e:
        msg = f"Failed to execute query: {e}"
        raise CommandError(msg) from e
    finally:
        engine.dispose()

    truncated = len(rows) > MAX_ROWS
    return columns, rows[:MAX_ROWS], truncated


async def db_query(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """
    SQLite データベースに SELECT クエリを実行する.

    SELECT 以外は拒否する。データベースは読み取り専用で開き、最大 100 行を返す。

    Raises:
        CommandError: SELECT 以外のクエリ、または実行に失敗した場合
    """
    db_path = arguments["db_path"]
    query = arguments["query"]
    if not query.strip().upper().startswith("SELECT"):
        msg = "Only SELECT queries are allowed"
        raise CommandError(msg)

    logger.info("Running query", db_path=db_path, session_id=ctx.session_id)
    columns, rows, truncated = _run_select(db_path, query)

    lines = [f"Columns: {columns}"]
    for i, row in enumerate(rows):
        cells = ", ".join(
            f"'{name}': {'NULL' if value is None else repr(value)}"
            for name, value in zip(columns, row, strict=True)
        )
        lines.append(f"Row {i}: {{{cells}}}")
    if truncated:
        lines.append("... (truncated)")

    return ToolOutcome(
        result_text=f"Query executed, {len(rows)} rows returned.\n" + "\n".join(lines),
        summary=f"db_query {db_path}",
    )


SPECS = {
    Capability.DB_QUERY: ToolSpec(
        handler=db_query,
        describe=lambda args: f"db_query {args['db_path']}: {args['query']}",
        gate=GateMode.CONFIRM,
        prompt=lambda args: (
            f"Run query on DB {args['db_path']}: {args['query']} ? (y/n): "
        ),
        cancel_message="Query cancelled by user",
    ),
}
