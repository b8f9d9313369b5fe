from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ContentBlock(BaseModel):
    # text, image, tool_use, tool_result, thinking, document, ... Only text
    # segments are translated; the rest are accepted and dropped.
    type: str
    text: str | None = None

    model_config = ConfigDict(extra="allow")


class AnthropicMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class MessagesRequest(BaseModel):
    model: str
    messages: list[AnthropicMessage]
    system: str | list[ContentBlock] | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stream: bool = True
    tools: list[dict[str, Any]] | None = None
    tool_choice: dict[str, Any] | None = None

    # Accept extra fields from clients (metadata, stop_sequences, thinking, ...).
    model_config = ConfigDict(extra="allow")

    def system_text(self) -> str | None:
        if self.system is None:
            return None
        if isinstance(self.system, str):
            return self.system
        return text_of_blocks(self.system)


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    error: dict[str, Any] = Field(default_factory=dict)


def text_of_blocks(blocks: list[ContentBlock]) -> str:
    return "".join(b.text or "" for b in blocks if b.type == "text")
