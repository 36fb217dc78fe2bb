"""LLM subsystem -- inference server client, wire format and policy hooks."""

from guardchat.llm.client import ChatResult, InferenceClient, StreamEvent
from guardchat.llm.wire import (
    ChatOptions,
    StreamChunk,
    build_chat_payload,
    parse_chat_response,
    parse_stream_line,
)

__all__ = [
    "ChatOptions",
    "ChatResult",
    "InferenceClient",
    "StreamChunk",
    "StreamEvent",
    "build_chat_payload",
    "parse_chat_response",
    "parse_stream_line",
]
