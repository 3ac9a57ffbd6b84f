"""
Pydantic models for the Code Assist (Gemini) request/response structures.

Field names follow Python conventions; the wire format uses the camelCase
aliases. Serialize with ``to_wire()`` and parse with ``model_validate``.
"""

from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field

from gcli_gateway.core.interfaces.model_bases import DomainModel


class FinishReason(str, Enum):
    """Finish reasons for candidate responses."""

    FINISH_REASON_UNSPECIFIED = "FINISH_REASON_UNSPECIFIED"
    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    RECITATION = "RECITATION"
    BLOCKLIST = "BLOCKLIST"
    PROHIBITED_CONTENT = "PROHIBITED_CONTENT"
    SPII = "SPII"
    MALFORMED_FUNCTION_CALL = "MALFORMED_FUNCTION_CALL"
    OTHER = "OTHER"


class WireModel(DomainModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Blob(WireModel):
    """Raw bytes data with MIME type."""

    mime_type: str = Field(alias="mimeType")
    data: str  # Base64 encoded data


class Part(WireModel):
    """A part of a content message."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    text: str | None = None
    inline_data: Blob | None = Field(None, alias="inlineData")
    thought: bool | None = None


class Content(WireModel):
    """Content of a conversation turn."""

    role: str | None = None  # "user" or "model"
    parts: list[Part] = Field(default_factory=list)


class ThinkingConfig(WireModel):
    thinking_budget: int = Field(alias="thinkingBudget")
    include_thoughts: bool | None = Field(None, alias="includeThoughts")


class GenerationConfig(WireModel):
    """Configuration options for model generation."""

    temperature: float | None = None
    top_p: float | None = Field(None, alias="topP")
    top_k: int | None = Field(None, alias="topK")
    max_output_tokens: int | None = Field(None, alias="maxOutputTokens")
    stop_sequences: list[str] | None = Field(None, alias="stopSequences")
    candidate_count: int | None = Field(None, alias="candidateCount")
    presence_penalty: float | None = Field(None, alias="presencePenalty")
    frequency_penalty: float | None = Field(None, alias="frequencyPenalty")
    seed: int | None = None
    response_mime_type: str | None = Field(None, alias="responseMimeType")
    response_schema: dict[str, Any] | None = Field(None, alias="responseSchema")
    thinking_config: ThinkingConfig | None = Field(None, alias="thinkingConfig")


class UpstreamRequest(WireModel):
    """The ``request`` member of a Code Assist generate call."""

    contents: list[Content]
    system_instruction: Content | None = Field(None, alias="systemInstruction")
    generation_config: GenerationConfig | None = Field(None, alias="generationConfig")
    safety_settings: list[dict[str, Any]] | None = Field(None, alias="safetySettings")


class Candidate(WireModel):
    """A generated candidate response."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    content: Content | None = None
    finish_reason: str | None = Field(None, alias="finishReason")
    index: int | None = None


class UsageMetadata(WireModel):
    """Usage metadata for the generation request."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    prompt_token_count: int | None = Field(None, alias="promptTokenCount")
    candidates_token_count: int | None = Field(None, alias="candidatesTokenCount")
    thoughts_token_count: int | None = Field(None, alias="thoughtsTokenCount")
    total_token_count: int | None = Field(None, alias="totalTokenCount")


class UpstreamResponse(WireModel):
    """One complete response or one streamed increment."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    candidates: list[Candidate] = Field(default_factory=list)
    usage_metadata: UsageMetadata | None = Field(None, alias="usageMetadata")
    prompt_feedback: dict[str, Any] | None = Field(None, alias="promptFeedback")
    model_version: str | None = Field(None, alias="modelVersion")
