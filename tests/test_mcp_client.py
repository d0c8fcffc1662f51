"""Tests for the MCP remote tool client."""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from mcp.types import (
    AudioContent,
    CallToolResult,
    EmbeddedResource,
    ImageContent,
    ListToolsResult,
    ResourceLink,
    TextContent,
    TextResourceContents,
    Tool,
)

from agent_toolgate.application.errors import RemoteToolError
from agent_toolgate.infrastructure.mcp_client import (
    EMPTY_RESULT,
    McpToolClient,
    format_tool_result,
)


def _text(value: str) -> TextContent:
    return TextContent(type="text", text=value)


def _client_with_session(session: MagicMock) -> McpToolClient:
    """セッション生成を差し替えたクライアントを返す."""
    client = McpToolClient("http://localhost:8080/mcp", timeout=5.0)

    @asynccontextmanager
    async def fake_session() -> AsyncIterator[MagicMock]:
        yield session

    client._session = fake_session  # type: ignore[method-assign]
    return client


class TestFormatToolResult:
    """結果整形のテスト."""

    def test_text_blocks_joined(self) -> None:
        """テキストが改行区切りで連結されることを確認する."""
        result = CallToolResult(content=[_text("line 1"), _text("line 2")])
        assert format_tool_result(result) == "line 1\nline 2"

    def test_empty_content(self) -> None:
        """コンテンツがない場合は既定の文言になることを確認する."""
        assert format_tool_result(CallToolResult(content=[])) == EMPTY_RESULT

    def test_non_text_blocks_summarized(self) -> None:
        """テキスト以外のコンテンツが要約されることを確認する."""
        image = ImageContent(
            type="image",
            data=base64.b64encode(b"\x89PNG1234").decode(),
            mimeType="image/png",
        )
        audio = AudioContent(type="audio", data="AAAA", mimeType="audio/wav")
        link = ResourceLink(type="resource_link", name="readme", uri="file:///readme.md")
        embedded = EmbeddedResource(
            type="resource",
            resource=TextResourceContents(uri="file:///a.txt", text="hello"),
        )
        result = CallToolResult(content=[_text("done"), image, audio, link, embedded])

        assert format_tool_result(result).splitlines() == [
            "done",
            "[Image: 8 bytes, type: image/png]",
            "[Audio content]",
            "[Resource link]",
            "[Resource content]",
        ]


class TestMcpToolClient:
    """McpToolClient のテスト."""

    @pytest.mark.asyncio
    async def test_call_tool(self) -> None:
        """ツール呼び出しの結果がテキストで返ることを確認する."""
        session = MagicMock()
        session.call_tool = AsyncMock(
            return_value=CallToolResult(content=[_text("sunny")])
        )
        client = _client_with_session(session)

        assert await client.call_tool("weather", {"city": "Tokyo"}) == "sunny"
        session.call_tool.assert_awaited_once_with("weather", {"city": "Tokyo"})

    @pytest.mark.asyncio
    async def test_tool_side_error(self) -> None:
        """isError の結果で RemoteToolError になることを確認する."""
        session = MagicMock()
        session.call_tool = AsyncMock(
            return_value=CallToolResult(content=[_text("city not found")], isError=True)
        )
        client = _client_with_session(session)

        with pytest.raises(RemoteToolError, match="city not found"):
            await client.call_tool("weather", {})

    @pytest.mark.asyncio
    async def test_connection_failure(self) -> None:
        """接続失敗で RemoteToolError になることを確認する."""
        session = MagicMock()
        session.call_tool = AsyncMock(side_effect=ConnectionError("refused"))
        client = _client_with_session(session)

        with pytest.raises(RemoteToolError, match="Tool 'weather' failed: refused"):
            await client.call_tool("weather", {})

    @pytest.mark.asyncio
    async def test_list_tools(self) -> None:
        """ツール一覧が (名前, 説明) で返ることを確認する."""
        session = MagicMock()
        session.list_tools = AsyncMock(
            return_value=ListToolsResult(
                tools=[
                    Tool(name="weather", description="Get weather", inputSchema={}),
                    Tool(name="echo", inputSchema={}),
                ]
            )
        )
        client = _client_with_session(session)

        assert list(await client.list_tools()) == [
            ("weather", "Get weather"),
            ("echo", None),
        ]
