"""LLM subsystem -- canonical types, providers, routing, and stream assembly."""

from toolrelay.llm.errors import ProviderError
from toolrelay.llm.router import LLMRouter
from toolrelay.llm.thread import validate_and_normalize_thread, validate_thread_coherence
from toolrelay.llm.tool_call_accumulator import ToolCallAccumulator
from toolrelay.llm.types import (
    ImageAttachment,
    LLMResponse,
    Message,
    StreamChunk,
    ToolCall,
    ToolCallDelta,
    Usage,
)

__all__ = [
    "ImageAttachment",
    "LLMResponse",
    "LLMRouter",
    "Message",
    "ProviderError",
    "StreamChunk",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallDelta",
    "Usage",
    "validate_and_normalize_thread",
    "validate_thread_coherence",
]
