"""Web search and HTTP API testing capabilities."""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from typing import Any

import httpx

from agent_toolgate.application.audit import preview
from agent_toolgate.application.errors import CommandError, WebSearchError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import GateMode, ToolContext, ToolSpec
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")


async def web_search(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """
    DuckDuckGo Instant Answer API で検索し、応答本文をそのまま返す.

    非 2xx 応答はエラーにせず、ステータスと本文を結果テキストとして返す。

    Raises:
        WebSearchError: 通信に失敗した場合・タイムアウトした場合
    """
    query = arguments["query"]
    logger.info("Searching the web", query=query, session_id=ctx.session_id)
    try:
        async with ctx.http_client() as client:
            response = await client.get(
                ctx.web_search_url, params={"q": query, "format": "json"}
            )
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        msg = f"Search request failed: {e}"
        raise WebSearchError(msg) from e

    if not response.is_success:
        logger.warning("Search API returned an error", status=response.status_code)
        return ToolOutcome(
            result_text=(
                "Search API returned a non-success status: "
                f"{response.status_code} {response.reason_phrase}. Body: {response.text}"
            ),
            summary=f"web_search {query}",
            succeeded=False,
        )
    return ToolOutcome(result_text=response.text, summary=f"web_search {query}")


def _parse_headers(headers: str) -> dict[str, str]:
    """JSON オブジェクト形式のヘッダーを解析する（解析できない場合は無視する）."""
    if not headers.strip():
        return {}
    try:
        parsed = json.loads(headers)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed request headers", headers=headers)
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(k): str(v) for k, v in parsed.items()}


async def api_test(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """
    HTTP リクエストを送信し、ステータス・ヘッダー・本文を返す.

    Raises:
        CommandError: 未対応のメソッド、または通信に失敗した場合
    """
    method = arguments["method"].upper()
    url = arguments["url"]
    if method not in SUPPORTED_METHODS:
        msg = f"Unsupported method: {arguments['method']}"
        raise CommandError(msg)

    body = arguments.get("body", "")
    started = time.monotonic()
    logger.info("Testing API", method=method, url=url, session_id=ctx.session_id)
    try:
        async with ctx.http_client() as client:
            response = await client.request(
                method,
                url,
                headers=_parse_headers(arguments.get("headers", "")),
                content=body or None,
            )
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        msg = f"Request failed: {e}"
        raise CommandError(msg) from e
    except UnicodeError as e:
        # ヘッダー値は ASCII のみ送信できる
        msg = f"Invalid request headers: {e}"
        raise CommandError(msg) from e

    result = (
        f"Status: {response.status_code} {response.reason_phrase}\n"
        f"Headers: {dict(response.headers)}\n"
        f"Body: {response.text}"
    )
    return ToolOutcome(
        result_text=result,
        summary=f"{method} {url}",
        succeeded=response.is_success,
        stdout_preview=preview(response.text),
        duration_ms=int((time.monotonic() - started) * 1000),
    )


def _is_mutating(arguments: Mapping[str, Any]) -> bool:
    return str(arguments.get("method", "")).upper() != "GET"


SPECS = {
    Capability.WEB_SEARCH: ToolSpec(
        handler=web_search, describe=lambda args: f"web_search {args['query']}"
    ),
    Capability.API_TEST: ToolSpec(
        handler=api_test,
        describe=lambda args: f"{args['method'].upper()} {args['url']}",
        gate=GateMode.CONFIRM,
        gate_when=_is_mutating,
        prompt=lambda args: (
            f"Test API {args['method']} {args['url']} with headers "
            f"'{args.get('headers', '')}' and body '{args.get('body', '')}' ? (y/n): "
        ),
        cancel_message="API test cancelled by user",
    ),
}
