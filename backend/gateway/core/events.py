"""
Translation from upstream stream chunks to outbound server-sent events.

Pure functions only: the relay feeds chunks in and writes the returned strings
out, so both framings can be tested against fixed fixtures.
"""

import json
from typing import Any

from gateway.models.ollama import StreamChunk


def init_event(conversation_id: str) -> dict[str, Any]:
    return {"type": "init", "conversation_id": conversation_id}


def chunk_event(chunk: StreamChunk) -> dict[str, Any]:
    event: dict[str, Any] = {
        "type": "chunk",
        "content": chunk.content,
        "done": chunk.done,
    }
    if chunk.done:
        event["total_tokens"] = chunk.total_tokens
        event["eval_count"] = chunk.eval_count or 0
        event["duration"] = chunk.duration_seconds
    return event


def error_event(message: str) -> dict[str, Any]:
    return {"type": "error", "error": message}


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"
