"""HTTP client for OpenAI-compatible and Gemini chat endpoints."""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from agent_toolgate.application.errors import ApiError
from agent_toolgate.application.models import ConversationMessage, Role
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

NO_RESPONSE = "[No response]"


class ChatModel(Protocol):
    """会話履歴を受け取り、モデル応答を返すクライアント."""

    async def complete(self, history: Sequence[ConversationMessage]) -> str:
        """モデル応答を返す."""
        ...


def _string_param(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def _declaration(
    name: str, description: str, properties: dict[str, Any], required: list[str]
) -> dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": properties,
            "required": required,
        },
    }


# Gemini に渡す組み込みツールの関数宣言
FUNCTION_DECLARATIONS: list[dict[str, Any]] = [
    _declaration(
        "read_file",
        "Read the contents of a file",
        {"path": _string_param("The path to the file to read")},
        ["path"],
    ),
    _declaration(
        "write_file",
        "Write content to a file",
        {
            "path": _string_param("The path to the file to write"),
            "content": _string_param("The content to write to the file"),
        },
        ["path", "content"],
    ),
    _declaration(
        "search_replace",
        "Search and replace text in a file",
        {
            "path": _string_param("The path to the file"),
            "old_string": _string_param("The text to replace"),
            "new_string": _string_param("The replacement text"),
        },
        ["path", "old_string", "new_string"],
    ),
    _declaration(
        "run_command",
        "Run a shell command",
        {"command": _string_param("The command to run")},
        ["command"],
    ),
    _declaration(
        "todo",
        "Manage todo list. Supported actions: add, list, remove, clear",
        {
            "action": {
                "type": "string",
                "enum": ["add", "list", "remove", "clear"],
                "description": "The action to perform",
            },
            "description": _string_param("Description for 'add' action"),
            "index": {
                "type": "integer",
                "description": "1-based index for 'remove' action",
            },
        },
        ["action"],
    ),
    _declaration("git_status", "Get the current git status", {}, []),
    _declaration("git_diff", "Get the git diff", {}, []),
    _declaration(
        "git_commit",
        "Commit changes with a message",
        {"message": _string_param("The commit message")},
        ["message"],
    ),
    _declaration(
        "git_add",
        "Add files to git staging",
        {"files": _string_param("Files to add (space-separated)")},
        ["files"],
    ),
]


def _tool_call_json(name: str, args: Any) -> str:
    """プロバイダー固有の関数呼び出しを ``{"tool", "args"}`` 形式の JSON に変換する."""
    if isinstance(args, str):
        try:
            args = json.loads(args) if args.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Function call arguments are not valid JSON", tool=name)
            args = {}
    if not isinstance(args, dict):
        args = {}
    return json.dumps({"tool": name, "args": args}, ensure_ascii=False)


def parse_openai_reply(payload: dict[str, Any]) -> str:
    """chat completions 応答から本文（またはツール呼び出し）を取り出す."""
    try:
        message = payload["choices"][0]["message"]
    except (KeyError, IndexError, TypeError):
        return NO_RESPONSE
    tool_calls = message.get("tool_calls")
    if tool_calls:
        function = tool_calls[0].get("function", {})
        name = function.get("name")
        if isinstance(name, str):
            return _tool_call_json(name, function.get("arguments"))
    content = message.get("content")
    return content if isinstance(content, str) else NO_RESPONSE


def parse_gemini_reply(payload: dict[str, Any]) -> str:
    """generateContent 応答から本文（または functionCall）を取り出す."""
    try:
        part = payload["candidates"][0]["content"]["parts"][0]
    except (KeyError, IndexError, TypeError):
        return NO_RESPONSE
    function_call = part.get("functionCall")
    if isinstance(function_call, dict) and isinstance(function_call.get("name"), str):
        return _tool_call_json(function_call["name"], function_call.get("args"))
    text = part.get("text")
    return text if isinstance(text, str) else NO_RESPONSE


class LLMClient:
    """
    言語モデル API クライアント.

    OpenAI / Sambanova は chat completions 形式、Gemini は generateContent 形式で送信する。
    プロバイダー固有の関数呼び出しは ``{"tool": name, "args": {...}}`` 形式に書き換えて返す。
    """

    def __init__(
        self,
        provider: str,
        api_key: str,
        base_url: str,
        model_name: str,
        *,
        timeout: float = 90.0,
        cache_ttl: float = 0.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize LLMClient.

        Args:
            provider: openai / sambanova / gemini
            api_key: API キー
            base_url: エンドポイント URL
            model_name: モデル名
            timeout: タイムアウト（秒）
            cache_ttl: 応答キャッシュの有効期間（秒、0で無効）
            transport: HTTP トランスポートの差し替え（テスト用）
        """
        self.provider = provider
        self.model_name = model_name
        self._api_key = api_key
        self._base_url = base_url
        self._cache_ttl = cache_ttl
        self._cache: dict[str, tuple[float, str]] = {}
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        """HTTP クライアントを閉じる."""
        await self._client.aclose()

    async def complete(self, history: Sequence[ConversationMessage]) -> str:
        """
        会話履歴を送信し、モデル応答を返す.

        Raises:
            ApiError: 通信失敗・タイムアウト・非 2xx 応答・不正な JSON の場合
        """
        cache_key = self._cache_key(history)
        cached = self._cache_get(cache_key)
        if cached is not None:
            logger.debug("LLM cache hit", provider=self.provider)
            return cached

        if self.provider == "gemini":
            url, headers, body = self._gemini_request(history)
        else:
            url, headers, body = self._openai_request(history)

        logger.info(
            "Calling LLM",
            provider=self.provider,
            model=self.model_name,
            messages=len(history),
        )
        try:
            response = await self._client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as e:
            msg = f"Request timed out: {e}"
            raise ApiError(msg) from e
        except httpx.HTTPError as e:
            msg = f"Request failed: {e}"
            raise ApiError(msg) from e

        if not response.is_success:
            logger.error(
                "LLM API returned an error",
                provider=self.provider,
                status=response.status_code,
            )
            msg = (
                f"API Error: {response.text} "
                f"({response.status_code} {response.reason_phrase})"
            )
            raise ApiError(msg)

        try:
            payload = response.json()
        except ValueError as e:
            msg = f"Invalid JSON response: {e}"
            raise ApiError(msg) from e

        if self.provider == "gemini":
            reply = parse_gemini_reply(payload)
        else:
            reply = parse_openai_reply(payload)
        self._cache_put(cache_key, reply)
        return reply

    def _openai_request(
        self, history: Sequence[ConversationMessage]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        body = {
            "model": self.model_name,
            "messages": [{"role": m.role.value, "content": m.content} for m in history],
            "temperature": 0.1,
            "top_p": 0.1,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        return self._base_url, headers, body

    def _gemini_request(
        self, history: Sequence[ConversationMessage]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        for message in history:
            if message.role is Role.SYSTEM:
                system_parts.append(message.content)
                continue
            role = "model" if message.role is Role.ASSISTANT else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        body: dict[str, Any] = {
            "contents": contents,
            "tools": [{"function_declarations": FUNCTION_DECLARATIONS}],
        }
        if system_parts:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}

        url = self._base_url
        if ":generateContent" not in url:
            url = f"{url.rstrip('/')}/{self.model_name}:generateContent"
        return url, {"x-goog-api-key": self._api_key}, body

    def _cache_key(self, history: Sequence[ConversationMessage]) -> str:
        raw = json.dumps(
            [self.provider, self.model_name, [(m.role.value, m.content) for m in history]],
            ensure_ascii=False,
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _cache_get(self, key: str) -> str | None:
        if self._cache_ttl <= 0:
            return None
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, reply = entry
        if time.monotonic() - stored_at > self._cache_ttl:
            del self._cache[key]
            return None
        return reply

    def _cache_put(self, key: str, reply: str) -> None:
        if self._cache_ttl <= 0:
            return
        now = time.monotonic()
        # 期限切れのエントリを捨てる
        expired = [
            k for k, (stored_at, _) in self._cache.items() if now - stored_at > self._cache_ttl
        ]
        for k in expired:
            del self._cache[k]
        self._cache[key] = (now, reply)
