"""Model provider abstraction."""

from turnloop.core.llm.litellm_provider import LiteLLMProvider, create_provider
from turnloop.core.llm.provider import ModelProvider, ModelResponse, StreamChunk, assemble_stream

__all__ = [
    "LiteLLMProvider",
    "ModelProvider",
    "ModelResponse",
    "StreamChunk",
    "assemble_stream",
    "create_provider",
]
