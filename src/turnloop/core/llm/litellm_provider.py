"""LiteLLM provider implementation.

Supports 100+ model providers through litellm:
- Anthropic: "claude-sonnet-4-20250514"
- OpenAI: "gpt-4o"
- Local: "ollama/llama3"

Conversation turns are translated to the OpenAI chat format litellm expects:
tool_use blocks become assistant `tool_calls`, tool_result blocks become
`tool` role messages.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import litellm

from turnloop.config.secrets import fetch_secret
from turnloop.core.llm.provider import ModelResponse, StreamChunk
from turnloop.core.types import (
    ContentBlock,
    Message,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from turnloop.errors import ProviderError


def _tool_result_text(block: ToolResultBlock) -> str:
    if isinstance(block.content, str):
        return block.content
    return json.dumps(block.content, ensure_ascii=False, default=str)


def to_litellm_messages(messages: list[Message], system: str | None = None) -> list[dict[str, Any]]:
    """Convert turns into litellm/OpenAI chat messages."""
    out: list[dict[str, Any]] = []
    if system:
        out.append({"role": "system", "content": system})

    for msg in messages:
        if msg.role is Role.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            if msg.tool_uses:
                entry["tool_calls"] = [
                    {
                        "id": use.id,
                        "type": "function",
                        "function": {"name": use.name, "arguments": json.dumps(use.input)},
                    }
                    for use in msg.tool_uses
                ]
            out.append(entry)
            continue

        # Tool results must directly follow the assistant turn that asked for them
        for result in msg.tool_results:
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": result.tool_use_id,
                    "content": _tool_result_text(result),
                }
            )
        text = msg.text
        if text:
            out.append({"role": msg.role.value, "content": text})
    return out


def to_litellm_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for t in tools
    ]


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class LiteLLMProvider:
    """Model provider using litellm for multi-provider support.

    Usage:
        provider = LiteLLMProvider("claude-sonnet-4-20250514")
        provider = LiteLLMProvider("gpt-4", api_base="http://localhost:8000/v1")
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        api_key_env: str | None = None,
        api_base: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the provider.

        Args:
            model: Model identifier
            api_key: API key (falls back to api_key_env, then litellm's env lookup)
            api_key_env: Secret name resolved through fetch_secret()
            api_base: Custom API base URL
            **kwargs: Additional litellm options
        """
        self._model = model
        self._api_key = api_key or (fetch_secret(api_key_env) if api_key_env else None)
        self._api_base = api_base
        self._kwargs = kwargs

    @property
    def model(self) -> str:
        return self._model

    def _build_kwargs(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None,
        system: str | None,
        max_tokens: int,
        temperature: float | None,
        stream: bool,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": to_litellm_messages(messages, system),
            "max_tokens": max_tokens,
            "stream": stream,
            **self._kwargs,
        }
        litellm_tools = to_litellm_tools(tools)
        if litellm_tools:
            kwargs["tools"] = litellm_tools
        if temperature is not None:
            kwargs["temperature"] = temperature
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> ModelResponse:
        kwargs = self._build_kwargs(
            messages,
            tools=tools,
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=False,
        )
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ProviderError(f"{self._model}: {e}") from e

        choice = response.choices[0]
        content: list[ContentBlock] = []
        if choice.message.content:
            content.append(TextBlock(choice.message.content))
        for call in choice.message.tool_calls or []:
            content.append(
                ToolUseBlock(
                    id=call.id,
                    name=call.function.name,
                    input=_parse_arguments(call.function.arguments),
                )
            )

        usage = None
        if getattr(response, "usage", None):
            usage = Usage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )

        return ModelResponse(content=content, usage=usage, stop_reason=choice.finish_reason)

    async def stream(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion; tool calls are yielded once fully assembled."""
        kwargs = self._build_kwargs(
            messages,
            tools=tools,
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
        )
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ProviderError(f"{self._model}: {e}") from e

        # index -> [id, name, argument fragments]
        pending_calls: dict[int, list[Any]] = {}
        finish_reason: str | None = None

        async for chunk in response:
            usage = getattr(chunk, "usage", None)
            if usage:
                yield StreamChunk(
                    usage=Usage(
                        input_tokens=usage.prompt_tokens or 0,
                        output_tokens=usage.completion_tokens or 0,
                    )
                )
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None:
                if delta.content:
                    yield StreamChunk(text=delta.content)
                for call in getattr(delta, "tool_calls", None) or []:
                    slot = pending_calls.setdefault(call.index or 0, [None, None, []])
                    if call.id:
                        slot[0] = call.id
                    if call.function is not None:
                        if call.function.name:
                            slot[1] = call.function.name
                        if call.function.arguments:
                            slot[2].append(call.function.arguments)
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        for index in sorted(pending_calls):
            call_id, name, fragments = pending_calls[index]
            yield StreamChunk(
                tool_use=ToolUseBlock(
                    id=call_id or f"call_{index}",
                    name=name or "",
                    input=_parse_arguments("".join(fragments)),
                )
            )
        yield StreamChunk(is_final=True, finish_reason=finish_reason)


def create_provider(model: str = "claude-sonnet-4-20250514", **kwargs: Any) -> LiteLLMProvider:
    """Create a provider with sensible defaults."""
    return LiteLLMProvider(model, **kwargs)
