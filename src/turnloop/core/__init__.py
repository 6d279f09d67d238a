"""Conversation model and provider layer."""

from turnloop.core.llm import LiteLLMProvider, ModelProvider, ModelResponse, StreamChunk
from turnloop.core.types import (
    ContentBlock,
    Message,
    Role,
    SessionState,
    Snapshot,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)

__all__ = [
    "ContentBlock",
    "LiteLLMProvider",
    "Message",
    "ModelProvider",
    "ModelResponse",
    "Role",
    "SessionState",
    "Snapshot",
    "StreamChunk",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "Usage",
]
