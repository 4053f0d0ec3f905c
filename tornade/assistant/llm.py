"""Dialogue turns against an Ollama-style chat endpoint, with tool calls."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from .errors import ServiceError

if TYPE_CHECKING:
    from .config import LLMConfig
    from .session import ChatMessage
    from .tools import ToolDispatcher

LOGGER = logging.getLogger("tornade-assistant.llm")

SUPPORTED_TOOLS = frozenset({"controlServer", "control_mcp_server"})
_TOOL_NAME_KEYS = ("toolName", "tool_name")


@dataclass(frozen=True)
class PlainText:
    text: str


@dataclass(frozen=True)
class RecognizedToolCall:
    name: str
    arguments: dict[str, Any]
    raw: str


@dataclass(frozen=True)
class MalformedToolLikeText:
    """JSON that mentions a tool but does not validate; spoken as-is."""

    text: str


ParsedReply = PlainText | RecognizedToolCall | MalformedToolLikeText


def parse_tool_call(content: str) -> ParsedReply:
    """Classify a chat reply as plain text or a tool invocation.

    Only a reply whose entire body is a JSON object naming a supported tool with
    an object of arguments counts as a tool call.
    """
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return PlainText(content)
    if not isinstance(parsed, dict):
        return PlainText(content)
    name = next((parsed[key] for key in _TOOL_NAME_KEYS if key in parsed), None)
    if name is None:
        return PlainText(content)
    arguments = parsed.get("arguments")
    if not isinstance(name, str) or name not in SUPPORTED_TOOLS or not isinstance(arguments, dict):
        return MalformedToolLikeText(content)
    return RecognizedToolCall(name=name, arguments=arguments, raw=content)


def history_to_turns(history: Sequence[ChatMessage]) -> list[dict[str, str]]:
    return [
        {"role": "user" if message.sender == "user" else "assistant", "content": message.text}
        for message in history
    ]


@dataclass(slots=True)
class DialogueEngine:
    config: LLMConfig
    dispatcher: ToolDispatcher
    timeout: float | None = None
    client: httpx.AsyncClient | None = None
    logger: logging.Logger = field(default=LOGGER, repr=False)
    _owns_client: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def aclose(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self._owns_client = False

    def build_messages(self, history: Sequence[ChatMessage], user_text: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.config.system_prompt},
            *history_to_turns(history),
            {"role": "user", "content": user_text},
        ]

    async def respond(self, history: Sequence[ChatMessage], user_text: str) -> str:
        messages = self.build_messages(history, user_text)
        content = await self._chat(messages)
        parsed = parse_tool_call(content)
        if isinstance(parsed, MalformedToolLikeText):
            self.logger.debug("[llm] Reply looked like a tool call but failed validation; speaking it")
        if not isinstance(parsed, RecognizedToolCall):
            return content

        command = parsed.arguments.get("command")
        self.logger.info("[llm] Tool call %s: %s", parsed.name, parsed.arguments)
        result = await self.dispatcher.dispatch(command, parsed.arguments)
        self.logger.debug("[llm] Tool result: %s", result)
        follow_up = [
            *messages,
            {"role": "assistant", "content": content},
            {"role": "tool", "content": json.dumps(result)},
        ]
        return await self._chat(follow_up)

    async def _chat(self, messages: list[dict[str, str]]) -> str:
        payload = {"model": self.config.model, "stream": False, "messages": messages}
        try:
            response = await self.client.post(self.config.chat_url, json=payload)
        except httpx.RequestError as exc:
            raise ServiceError(f"Chat service unreachable: {exc}") from exc
        if not response.is_success:
            raise ServiceError(f"Chat request failed (HTTP {response.status_code})")
        try:
            body = response.json()
        except ValueError as exc:
            raise ServiceError("Chat service returned invalid JSON") from exc
        message = body.get("message") if isinstance(body, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ServiceError("Chat response is missing message content")
        return content
