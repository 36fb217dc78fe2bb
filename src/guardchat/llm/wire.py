"""Inference server wire format: request payloads and response parsing.

Non-streaming ``POST /api/chat`` answers with a single JSON object whose
``message.content`` holds the full text.  Streaming answers are
newline-delimited JSON objects; each carries a ``message.content`` delta and
the last one has ``done: true``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

from guardchat.errors import UpstreamProtocolError

logger = logging.getLogger(__name__)

WireMessage = dict[str, str]


@dataclass
class ChatOptions:
    """Sampling options forwarded as ``options``; ``None`` fields are omitted."""

    temperature: float | None = 0.7
    top_p: float | None = 0.9
    top_k: int | None = None
    num_ctx: int | None = 4096

    def to_payload(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class StreamChunk:
    content: str = ""
    done: bool = False
    error: str | None = None


def build_chat_payload(
    model: str,
    messages: list[WireMessage],
    *,
    stream: bool,
    options: ChatOptions | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"model": model, "messages": messages, "stream": stream}
    if options is not None:
        opts = options.to_payload()
        if opts:
            payload["options"] = opts
    return payload


def parse_chat_response(data: Any) -> str:
    """Extract ``message.content`` from a non-streaming response body."""
    if not isinstance(data, dict):
        raise UpstreamProtocolError("chat response is not a JSON object")
    if data.get("error"):
        raise UpstreamProtocolError(f"inference server error: {data['error']}")
    message = data.get("message")
    if not isinstance(message, dict):
        raise UpstreamProtocolError("chat response has no message")
    content = message.get("content", "")
    if not isinstance(content, str):
        raise UpstreamProtocolError("chat response content is not a string")
    return content


def parse_stream_line(line: str) -> StreamChunk | None:
    """Decode one NDJSON line.  Blank or undecodable lines yield None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable stream line: %.200s", stripped)
        return None
    if not isinstance(data, dict):
        return None

    if data.get("error"):
        return StreamChunk(error=str(data["error"]), done=True)

    message = data.get("message")
    content = ""
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        content = message["content"]
    return StreamChunk(content=content, done=bool(data.get("done", False)))
