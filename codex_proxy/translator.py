"""Anthropic Messages <-> Codex chat-completions translation.

Pure functions only: no I/O, no settings lookups. Lossy by construction:
image and tool segments are dropped, and tool declarations are ignored.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Mapping

from .anthropic_compat import MessagesRequest, text_of_blocks
from .config import MODEL_MAPPING

CODEX_SYSTEM_INSTRUCTIONS = (
    "You are a coding agent running in a terminal-based coding assistant. "
    "You are expected to be precise, safe, and helpful."
)

_STOP_REASONS = {"stop": "end_turn", "length": "max_tokens"}


def map_model(model: str, model_map: Mapping[str, str] | None = None) -> str:
    table = model_map if model_map is not None else MODEL_MAPPING
    mapped = table.get(model)
    if mapped:
        return mapped
    return table.get("default") or MODEL_MAPPING["default"]


def map_stop_reason(finish_reason: Any) -> str | None:
    if not isinstance(finish_reason, str):
        return None
    return _STOP_REASONS.get(finish_reason)


def translate_request(
    req: MessagesRequest,
    *,
    instructions: str | None = None,
    model_map: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    messages: list[dict[str, Any]] = []

    system = req.system_text()
    if system:
        messages.append({"role": "system", "content": system})

    for msg in req.messages:
        role = "assistant" if msg.role == "assistant" else "user"
        if isinstance(msg.content, str):
            content = msg.content
        else:
            content = text_of_blocks(msg.content)
        messages.append({"role": role, "content": content})

    out: dict[str, Any] = {
        "model": map_model(req.model, model_map),
        "messages": messages,
        "stream": req.stream,
        "store": False,
    }
    # top_k has no Codex equivalent.
    if req.max_tokens is not None:
        out["max_tokens"] = req.max_tokens
    if req.temperature is not None:
        out["temperature"] = req.temperature
    if req.top_p is not None:
        out["top_p"] = req.top_p
    if instructions:
        out["instructions"] = instructions
    return out


def _first_choice(body: Any) -> dict[str, Any] | None:
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    return choice if isinstance(choice, dict) else None


def _text_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    blocks: list[dict[str, Any]] = []
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                blocks.append({"type": "text", "text": part.get("text") or ""})
    return blocks


def translate_usage(usage: Any) -> dict[str, int] | None:
    if not isinstance(usage, dict):
        return None
    return {
        "input_tokens": int(usage.get("prompt_tokens") or 0),
        "output_tokens": int(usage.get("completion_tokens") or 0),
    }


@dataclass(frozen=True)
class TranslatedResponse:
    content: list[dict[str, Any]]
    stop_reason: str | None
    usage: dict[str, int] | None


def translate_response(body: Any) -> TranslatedResponse:
    """Translate a complete (non-streaming) chat completion body."""
    usage = translate_usage(body.get("usage")) if isinstance(body, dict) else None
    choice = _first_choice(body)
    if choice is None:
        return TranslatedResponse(content=[], stop_reason=None, usage=usage)
    message = choice.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    return TranslatedResponse(
        content=_text_blocks(content),
        stop_reason=map_stop_reason(choice.get("finish_reason")),
        usage=usage,
    )


class SignalKind(str, enum.Enum):
    TEXT_DELTA = "text_delta"
    TURN_COMPLETE = "turn_complete"


@dataclass(frozen=True)
class StreamSignal:
    kind: SignalKind
    text: str = ""
    finish_reason: str | None = None


def translate_stream_chunk(chunk: Any) -> StreamSignal | None:
    """Translate one chat.completion.chunk; heartbeat/no-op chunks give None."""
    choice = _first_choice(chunk)
    if choice is None:
        return None
    finish_reason = choice.get("finish_reason")
    if finish_reason:
        return StreamSignal(SignalKind.TURN_COMPLETE, finish_reason=str(finish_reason))
    delta = choice.get("delta")
    if isinstance(delta, dict):
        text = delta.get("content")
        if isinstance(text, str) and text:
            return StreamSignal(SignalKind.TEXT_DELTA, text=text)
    return None


def format_sse_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def message_start_event(*, message_id: str, model: str) -> str:
    return format_sse_event(
        "message_start",
        {
            "type": "message_start",
            "message": {
                "id": message_id,
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": model,
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": 0, "output_tokens": 0},
            },
        },
    )


def content_block_start_event(index: int = 0) -> str:
    return format_sse_event(
        "content_block_start",
        {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}},
    )


def content_block_delta_event(text: str, index: int = 0) -> str:
    return format_sse_event(
        "content_block_delta",
        {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}},
    )


def content_block_stop_event(index: int = 0) -> str:
    return format_sse_event("content_block_stop", {"type": "content_block_stop", "index": index})


def message_delta_event(stop_reason: str | None, output_tokens: int = 0) -> str:
    return format_sse_event(
        "message_delta",
        {
            "type": "message_delta",
            "delta": {"stop_reason": stop_reason, "stop_sequence": None},
            "usage": {"output_tokens": output_tokens},
        },
    )


def message_stop_event() -> str:
    return format_sse_event("message_stop", {"type": "message_stop"})
