from __future__ import annotations

import time
import uuid
from typing import Any

from pydantic import ConfigDict, Field, field_validator

from gcli_gateway.core.interfaces.model_bases import DomainModel


# For multimodal content parts
class MessageContentPartText(DomainModel):
    """Represents a text content part in a multimodal message."""

    type: str = "text"
    text: str


class ImageURL(DomainModel):
    """Specifies the URL and optional detail for an image in a multimodal message."""

    # Should be a data URI (e.g., "data:image/jpeg;base64,...")
    url: str
    detail: str | None = Field(None, examples=["auto", "low", "high"])


class MessageContentPartImage(DomainModel):
    """Represents an image content part in a multimodal message."""

    type: str = "image_url"
    image_url: ImageURL


MessageContentPart = MessageContentPartText | MessageContentPartImage
"""Type alias for possible content parts in a multimodal message."""


class ChatMessage(DomainModel):
    """
    A chat message in a conversation.
    """

    role: str
    content: str | list[MessageContentPart] | None = None
    name: str | None = None

    def text_content(self) -> str:
        """Concatenated text of the message, ignoring non-text parts."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            p.text for p in self.content if isinstance(p, MessageContentPartText)
        )

    def is_empty(self) -> bool:
        if self.content is None:
            return True
        if isinstance(self.content, str):
            return not self.content.strip()
        for part in self.content:
            if isinstance(part, MessageContentPartImage):
                return False
            if part.text.strip():
                return False
        return True


class ChatRequest(DomainModel):
    """
    A request for a chat completion.

    Fields outside the OpenAI schema are kept and passed through.
    """

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[ChatMessage]
    stream: bool = False
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    n: int | None = None
    stop: list[str] | str | None = None
    max_tokens: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    seed: int | None = None
    response_format: dict[str, Any] | None = None
    user: str | None = None

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: list[ChatMessage]) -> list[ChatMessage]:
        if not v:
            raise ValueError("At least one message is required")
        return v

    @field_validator("stream", mode="before")
    @classmethod
    def none_stream_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @property
    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class ChatCompletionChoiceMessage(DomainModel):
    """Represents the message content within a chat completion choice."""

    role: str = "assistant"
    content: str | None = None
    reasoning_content: str | None = None


class ChatCompletionChoice(DomainModel):
    """Represents a single choice in a chat completion response."""

    index: int
    message: ChatCompletionChoiceMessage
    finish_reason: str | None = None


class ChatUsage(DomainModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


class ChatResponse(DomainModel):
    """
    A response from a chat completion.
    """

    id: str = Field(default_factory=new_completion_id)
    object: str = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: list[ChatCompletionChoice]
    usage: ChatUsage | None = None

    @property
    def text(self) -> str:
        """Content of the first choice."""
        if not self.choices:
            return ""
        return self.choices[0].message.content or ""


class StreamDelta(DomainModel):
    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None


class StreamChoice(DomainModel):
    index: int = 0
    delta: StreamDelta = Field(default_factory=StreamDelta)
    finish_reason: str | None = None


class StreamChunk(DomainModel):
    """One ``chat.completion.chunk`` event."""

    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: list[StreamChoice]
    usage: ChatUsage | None = None

    @property
    def content(self) -> str:
        return "".join(c.delta.content or "" for c in self.choices)

    @property
    def finish_reason(self) -> str | None:
        for choice in self.choices:
            if choice.finish_reason is not None:
                return choice.finish_reason
        return None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        for choice in payload["choices"]:
            choice.setdefault("finish_reason", None)
        return payload


class StreamError(DomainModel):
    """Terminal error event for a stream that failed after it started."""

    message: str
    type: str = "upstream_error"
    code: int = 502

    def to_payload(self) -> dict[str, Any]:
        return {"error": {"message": self.message, "type": self.type, "code": self.code}}


class StreamKeepAlive(DomainModel):
    """Idle marker sent while a synthesized answer is still pending."""
