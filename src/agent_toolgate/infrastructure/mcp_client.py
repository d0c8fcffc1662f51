"""Remote tool client over the Model Context Protocol (streamable HTTP)."""

from __future__ import annotations

import asyncio
import base64
import binascii
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import (
    AudioContent,
    CallToolResult,
    EmbeddedResource,
    ImageContent,
    ResourceLink,
    TextContent,
)

from agent_toolgate.application.errors import RemoteToolError
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

EMPTY_RESULT = "Tool executed successfully (no output)"


def _image_size(data: str) -> int:
    try:
        return len(base64.b64decode(data, validate=True))
    except (binascii.Error, ValueError):
        return len(data)


def format_tool_result(result: CallToolResult) -> str:
    """
    ツール呼び出し結果をテキストに整形する.

    テキストはそのまま改行区切りで連結し、それ以外のコンテンツは要約に置き換える。
    """
    parts: list[str] = []
    for block in result.content:
        if isinstance(block, TextContent):
            parts.append(block.text)
        elif isinstance(block, ImageContent):
            parts.append(f"[Image: {_image_size(block.data)} bytes, type: {block.mimeType}]")
        elif isinstance(block, AudioContent):
            parts.append("[Audio content]")
        elif isinstance(block, ResourceLink):
            parts.append("[Resource link]")
        elif isinstance(block, EmbeddedResource):
            parts.append("[Resource content]")
    if not parts:
        return EMPTY_RESULT
    return "\n".join(parts)


class McpToolClient:
    """
    MCP サーバーのツールを呼び出すクライアント.

    呼び出しごとに streamable HTTP のセッションを張り、終わったら閉じる。
    """

    def __init__(self, server_url: str, *, timeout: float = 30.0) -> None:
        """
        Initialize McpToolClient.

        Args:
            server_url: MCP サーバーの URL
            timeout: 1回の操作のタイムアウト（秒）
        """
        self.server_url = server_url
        self._timeout = timeout

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[ClientSession]:
        async with streamablehttp_client(self.server_url) as (read_stream, write_stream, _):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                yield session

    async def list_tools(self) -> Sequence[tuple[str, str | None]]:
        """
        サーバーが公開しているツールの (名前, 説明) 一覧を返す.

        Raises:
            RemoteToolError: 接続・取得に失敗した場合
        """
        try:
            async with asyncio.timeout(self._timeout):
                async with self._session() as session:
                    result = await session.list_tools()
        except TimeoutError as e:
            msg = f"Listing tools timed out after {self._timeout} seconds"
            raise RemoteToolError(msg) from e
        except Exception as e:
            logger.warning("Failed to list MCP tools", url=self.server_url, error=str(e))
            msg = f"Failed to list tools: {e}"
            raise RemoteToolError(msg) from e
        return [(tool.name, tool.description) for tool in result.tools]

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> str:
        """
        ツールを呼び出し、結果を整形済みテキストで返す.

        Raises:
            RemoteToolError: 接続失敗・タイムアウト・ツール側のエラーの場合
        """
        logger.info("Calling MCP tool", tool=name, url=self.server_url)
        try:
            async with asyncio.timeout(self._timeout):
                async with self._session() as session:
                    result = await session.call_tool(name, dict(arguments))
        except TimeoutError as e:
            msg = f"Tool '{name}' timed out after {self._timeout} seconds"
            raise RemoteToolError(msg) from e
        except Exception as e:
            msg = f"Tool '{name}' failed: {e}"
            raise RemoteToolError(msg) from e

        text = format_tool_result(result)
        if result.isError:
            raise RemoteToolError(text)
        return text
