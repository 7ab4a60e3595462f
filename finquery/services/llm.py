# =============================================================================
# LLM Tool Selection — Backend for the LLM Intent Resolver
# =============================================================================
#
# Hands the data function catalog to a chat model as native tools and
# returns the calls the model chose. Anthropic takes the tool list as-is;
# OpenAI-compatible APIs (OpenAI, DeepSeek, Qwen, ...) get each schema
# wrapped as {"type": "function", "function": {...}}.
#
# Only LLMResolver calls this. The default rule-based resolver never
# touches the network.
#
#   ToolSelector (Protocol)
#   ├── AnthropicToolSelector        — tool_use content blocks
#   ├── OpenAICompatibleToolSelector — message.tool_calls, JSON arguments
#   └── get_tool_selector()          — singleton factory, reads from config
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from finquery.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    """One function the model asked to run."""

    name: str
    arguments: dict[str, Any]
    call_id: str = ""


@dataclass
class ToolSelection:
    """What the model returned: its tool calls plus any text it wrote."""

    model: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    text: str = ""


class ToolCallFormatError(ValueError):
    """The provider returned a tool call whose arguments are not a JSON object."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ToolSelector(Protocol):
    async def select_tools(
        self,
        messages: list[dict[str, str]],
        tools: list[dict],
        system: str | None = None,
    ) -> ToolSelection:
        """
        Ask the model which tools answer the conversation.

        Args:
            messages: "user"/"assistant" turns, oldest first.
            tools: catalog schemas as {"name", "description", "input_schema"}.
            system: System prompt.
        """
        ...


def openai_tools(tools: list[dict]) -> list[dict]:
    """Catalog schemas in the OpenAI `tools=` shape."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["input_schema"],
            },
        }
        for tool in tools
    ]


def _decode_arguments(name: str, raw: str | None) -> dict[str, Any]:
    try:
        arguments = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise ToolCallFormatError(f"{name}: arguments are not JSON ({e.msg})") from e
    if not isinstance(arguments, dict):
        raise ToolCallFormatError(f"{name}: arguments are not an object")
    return arguments


# ---------------------------------------------------------------------------
# Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicToolSelector:
    """Claude tool use: the system prompt is a top-level kwarg."""

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or settings.llm_model
        logger.info("Initialized AnthropicToolSelector (model=%s)", self._model)

    async def select_tools(
        self,
        messages: list[dict[str, str]],
        tools: list[dict],
        system: str | None = None,
    ) -> ToolSelection:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "tools": tools,
            "tool_choice": {"type": "auto"},
            "max_tokens": settings.llm_max_tokens,
            "temperature": settings.llm_temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        selection = ToolSelection(model=response.model)
        for block in response.content:
            if block.type == "tool_use":
                if not isinstance(block.input, dict):
                    raise ToolCallFormatError(f"{block.name}: input is not an object")
                selection.tool_calls.append(
                    ToolCall(name=block.name, arguments=block.input, call_id=block.id)
                )
            elif block.type == "text" and not selection.text:
                selection.text = block.text
        return selection


# ---------------------------------------------------------------------------
# OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleToolSelector:
    """
    Function calling over any OpenAI chat completions API.

    Switching vendors is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        logger.info(
            "Initialized OpenAICompatibleToolSelector (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def select_tools(
        self,
        messages: list[dict[str, str]],
        tools: list[dict],
        system: str | None = None,
    ) -> ToolSelection:
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            tools=openai_tools(tools),
            tool_choice="auto",
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
        )

        message = response.choices[0].message
        return ToolSelection(
            model=response.model or self._model,
            tool_calls=[
                ToolCall(
                    name=call.function.name,
                    arguments=_decode_arguments(call.function.name, call.function.arguments),
                    call_id=call.id,
                )
                for call in message.tool_calls or ()
            ],
            text=message.content or "",
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton — SDK clients pool their own connections
_selector: AnthropicToolSelector | OpenAICompatibleToolSelector | None = None


def get_tool_selector() -> AnthropicToolSelector | OpenAICompatibleToolSelector:
    """
    Return the configured tool selector.

    - "anthropic" → AnthropicToolSelector (Claude)
    - "openai_compatible" → OpenAICompatibleToolSelector
    """
    global _selector
    if _selector is None:
        if settings.llm_provider == "openai_compatible":
            _selector = OpenAICompatibleToolSelector()
        else:
            _selector = AnthropicToolSelector()
    return _selector
