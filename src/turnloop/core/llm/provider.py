"""Model provider protocol and response types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from turnloop.core.types import ContentBlock, Message, TextBlock, ToolUseBlock, Usage


@dataclass(slots=True)
class ModelResponse:
    """Result of a non-streaming completion."""

    content: list[ContentBlock] = field(default_factory=list)
    usage: Usage | None = None
    stop_reason: str | None = None


@dataclass(slots=True)
class StreamChunk:
    """One increment of a streaming completion.

    A chunk carries a text delta, a completed tool call, a usage report, or
    the final marker.
    """

    text: str = ""
    tool_use: ToolUseBlock | None = None
    usage: Usage | None = None
    is_final: bool = False
    finish_reason: str | None = None


@runtime_checkable
class ModelProvider(Protocol):
    """Protocol for model providers.

    The engine only requires `complete`; `stream` is used when the session
    is configured for streaming and the provider has it.
    """

    @property
    def model(self) -> str:
        """The model identifier being used."""
        ...

    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> ModelResponse:
        ...


def assemble_stream(chunks: list[StreamChunk]) -> ModelResponse:
    """Fold streamed chunks back into a complete response."""

    content: list[ContentBlock] = []
    text = "".join(c.text for c in chunks)
    if text:
        content.append(TextBlock(text))
    content.extend(c.tool_use for c in chunks if c.tool_use is not None)

    usage: Usage | None = None
    stop_reason: str | None = None
    for chunk in chunks:
        if chunk.usage is not None:
            usage = chunk.usage
        if chunk.finish_reason:
            stop_reason = chunk.finish_reason
    return ModelResponse(content=content, usage=usage, stop_reason=stop_reason)
