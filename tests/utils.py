"""Shared test utilities for turnloop tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from turnloop.core.llm.provider import ModelResponse
from turnloop.core.types import Message, TextBlock, ToolUseBlock, Usage


def text_response(text: str) -> ModelResponse:
    """Assistant turn with a single text block."""
    return ModelResponse(content=[TextBlock(text)], usage=Usage(10, 5), stop_reason="end_turn")


def tool_response(*calls: tuple[str, str, dict[str, Any]], text: str = "") -> ModelResponse:
    """Assistant turn with one tool_use per (id, name, input).

    Args:
        *calls: (tool_use id, tool name, input) triples
        text: Optional leading text block
    """
    content: list[Any] = [TextBlock(text)] if text else []
    content.extend(ToolUseBlock(id=i, name=n, input=a) for i, n, a in calls)
    return ModelResponse(content=content, usage=Usage(10, 5), stop_reason="tool_use")


class ScriptedProvider:
    """Provider that replays a fixed list of responses.

    Entries may be ModelResponse objects, exceptions (raised) or callables
    taking the message list. Set `gate` to hold every call until it is set.
    """

    model = "scripted"

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[list[Message]] = []
        self.gate: asyncio.Event | None = None

    def add(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> ModelResponse:
        self.calls.append(list(messages))
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            return text_response("(no more scripted responses)")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(messages)
        return response


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Timed out waiting for condition")
        await asyncio.sleep(0.005)


def event_types(events: list[Any], *types: str) -> list[str]:
    """Types of `events`, keeping only `types` when given."""
    return [e.type for e in events if not types or e.type in types]


def create_mock_llm_response(
    content: str | None = "Test response",
    tool_calls: list[tuple[str, str, str]] | None = None,
) -> Any:
    """Create a mock LiteLLM response object.

    Args:
        content: Assistant text
        tool_calls: (id, name, JSON arguments) triples

    Returns:
        Mock mimicking the litellm response structure
    """
    from unittest.mock import Mock

    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message = Mock()
    response.choices[0].message.content = content
    response.choices[0].message.tool_calls = [
        Mock(id=call_id, function=Mock(arguments=arguments)) for call_id, _, arguments in tool_calls or []
    ]
    for mock_call, (_, name, _) in zip(response.choices[0].message.tool_calls, tool_calls or []):
        mock_call.function.name = name
    response.choices[0].finish_reason = "tool_calls" if tool_calls else "stop"

    response.usage = Mock()
    response.usage.prompt_tokens = 10
    response.usage.completion_tokens = 20
    return response


def create_mock_llm_stream_chunk(
    text: str | None = "chunk",
    is_final: bool = False,
    tool_call: tuple[int, str | None, str | None, str] | None = None,
) -> Any:
    """Create a mock streaming chunk from LiteLLM.

    Args:
        text: Text delta
        is_final: Whether this is the final chunk
        tool_call: (index, id, name, argument fragment) of a tool call delta
    """
    from unittest.mock import Mock

    chunk = Mock()
    chunk.usage = None
    chunk.choices = [Mock()]
    chunk.choices[0].delta = Mock()
    chunk.choices[0].delta.content = text
    chunk.choices[0].delta.tool_calls = None
    if tool_call is not None:
        index, call_id, name, fragment = tool_call
        delta = Mock(index=index, id=call_id, function=Mock(arguments=fragment))
        delta.function.name = name
        chunk.choices[0].delta.tool_calls = [delta]
    chunk.choices[0].finish_reason = "stop" if is_final else None
    return chunk
