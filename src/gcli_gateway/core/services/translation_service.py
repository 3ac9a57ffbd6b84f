from __future__ import annotations

import logging
import re
import time
from typing import Any

from pydantic import ValidationError

from gcli_gateway.core.common.exceptions import TranslationError
from gcli_gateway.core.domain.chat import (
    ChatCompletionChoice,
    ChatCompletionChoiceMessage,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatUsage,
    ImageURL,
    MessageContentPart,
    MessageContentPartImage,
    MessageContentPartText,
    StreamChoice,
    StreamChunk,
    StreamDelta,
)
from gcli_gateway.core.domain.gemini import (
    Blob,
    Content,
    GenerationConfig,
    Part,
    UpstreamRequest,
    UpstreamResponse,
    UsageMetadata,
)
from gcli_gateway.core.domain.model_utils import DecodedModel, thinking_config_for
from gcli_gateway.core.services.usage_estimation import (
    CharacterRatioUsageEstimator,
    UsageEstimator,
)

logger = logging.getLogger(__name__)

MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
PART_SEPARATOR = "\n\n"

ROLE_TO_UPSTREAM = {"assistant": "model", "model": "model"}

_FINISH_REASON_MAP = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "IMAGE_SAFETY": "content_filter",
}

# Client fields the translator maps explicitly; everything else is an extra
_GENERATION_CONFIG_FIELDS = {
    name: name for name in GenerationConfig.model_fields if name != "thinking_config"
}
_GENERATION_CONFIG_FIELDS.update(
    {
        info.alias: name
        for name, info in GenerationConfig.model_fields.items()
        if info.alias and name != "thinking_config"
    }
)


def map_finish_reason(finish_reason: str | None) -> str | None:
    """Map upstream finish reasons to OpenAI values."""
    if finish_reason is None or finish_reason == "FINISH_REASON_UNSPECIFIED":
        return None
    return _FINISH_REASON_MAP.get(str(finish_reason).upper(), "stop")


def parse_data_uri(url: str) -> Blob | None:
    """Split ``data:<mime>;base64,<data>`` into an inline blob."""
    if not url.startswith("data:"):
        return None
    header, sep, data = url[5:].partition(",")
    if not sep:
        return None
    mime_type = header.split(";", 1)[0] or "image/png"
    return Blob(mime_type=mime_type, data=data)


def text_to_parts(text: str) -> list[Part]:
    """Split text into text parts and inline images for markdown data-URI images."""
    parts: list[Part] = []
    last_end = 0
    for match in MARKDOWN_IMAGE_PATTERN.finditer(text):
        before = text[last_end : match.start()]
        if before.strip():
            parts.append(Part(text=before))
        blob = parse_data_uri(match.group(2))
        if blob is not None:
            parts.append(Part(inline_data=blob))
        else:
            parts.append(Part(text=match.group(0)))
        last_end = match.end()

    if last_end and last_end < len(text) and text[last_end:].strip():
        parts.append(Part(text=text[last_end:]))

    if not parts:
        parts.append(Part(text=text))
    return parts


def content_to_parts(content: str | list[MessageContentPart] | None) -> list[Part]:
    if content is None:
        return []
    if isinstance(content, str):
        return text_to_parts(content) if content.strip() else []

    parts: list[Part] = []
    for item in content:
        if isinstance(item, MessageContentPartText):
            if item.text.strip():
                parts.extend(text_to_parts(item.text))
        elif isinstance(item, MessageContentPartImage):
            blob = parse_data_uri(item.image_url.url.strip())
            if blob is not None:
                parts.append(Part(inline_data=blob))
            elif logger.isEnabledFor(logging.WARNING):
                logger.warning("Dropping image part that is not a data URI")
    return parts


def split_parts(parts: list[Part]) -> tuple[str, str]:
    """Return (content, reasoning) for a list of upstream parts.

    Text parts are joined with a blank line, ``thought`` parts go to the
    reasoning text and inline images become markdown data-URI images.
    """
    content_parts: list[str] = []
    reasoning: list[str] = []
    for part in parts:
        if part.text is not None:
            if not part.text:
                continue
            if part.thought:
                reasoning.append(part.text)
            else:
                content_parts.append(part.text)
        elif part.inline_data is not None and part.inline_data.data:
            content_parts.append(
                f"![image](data:{part.inline_data.mime_type};base64,{part.inline_data.data})"
            )
    return PART_SEPARATOR.join(content_parts), "".join(reasoning)


class TranslationService:
    """
    Stateless mapping between the OpenAI chat schema and the Code Assist schema.
    """

    def __init__(
        self,
        usage_estimator: UsageEstimator | None = None,
        max_output_tokens_cap: int = 65535,
    ) -> None:
        self.usage_estimator = usage_estimator or CharacterRatioUsageEstimator()
        self.max_output_tokens_cap = max_output_tokens_cap

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def normalize_request(self, request: ChatRequest) -> ChatRequest:
        """Drop empty messages and cap ``max_tokens``.

        Raises:
            TranslationError: If no message with content remains
        """
        messages = [m for m in request.messages if not m.is_empty()]
        if not messages:
            raise TranslationError("Request contains no message with content")
        update: dict[str, Any] = {}
        if len(messages) != len(request.messages):
            update["messages"] = messages
        if request.max_tokens is not None and request.max_tokens > self.max_output_tokens_cap:
            update["max_tokens"] = self.max_output_tokens_cap
        return request.model_copy(update=update) if update else request

    def to_upstream(self, request: ChatRequest, decoded: DecodedModel) -> UpstreamRequest:
        """Translate a chat request into the upstream ``request`` object.

        Leading system messages become ``systemInstruction``; later ones are
        sent as user turns. Message order is kept.
        """
        system_parts: list[Part] = []
        contents: list[Content] = []
        for message in request.messages:
            parts = content_to_parts(message.content)
            if not parts:
                continue
            if message.role == "system" and not contents:
                system_parts.append(Part(text=message.text_content()))
                continue
            role = ROLE_TO_UPSTREAM.get(message.role, "user")
            contents.append(Content(role=role, parts=parts))

        if not contents:
            raise TranslationError("Request contains no user or assistant content")

        return UpstreamRequest(
            contents=contents,
            system_instruction=(
                Content(role="user", parts=system_parts) if system_parts else None
            ),
            generation_config=self._generation_config(request, decoded),
        )

    def _generation_config(
        self, request: ChatRequest, decoded: DecodedModel
    ) -> GenerationConfig:
        values: dict[str, Any] = {}

        for key, value in request.extra_fields.items():
            target = _GENERATION_CONFIG_FIELDS.get(key)
            if target is not None and value is not None:
                values[target] = value
            elif logger.isEnabledFor(logging.DEBUG):
                logger.debug("Ignoring unsupported request field %s", key)

        if request.temperature is not None:
            values["temperature"] = request.temperature
        if request.top_p is not None:
            values["top_p"] = request.top_p
        if request.top_k is not None:
            values["top_k"] = request.top_k
        if request.n is not None:
            values["candidate_count"] = request.n
        if request.presence_penalty is not None:
            values["presence_penalty"] = request.presence_penalty
        if request.frequency_penalty is not None:
            values["frequency_penalty"] = request.frequency_penalty
        if request.seed is not None:
            values["seed"] = request.seed
        if request.stop is not None:
            values["stop_sequences"] = (
                [request.stop] if isinstance(request.stop, str) else list(request.stop)
            )
        if request.max_tokens is not None:
            values["max_output_tokens"] = request.max_tokens
        if isinstance(values.get("max_output_tokens"), int):
            values["max_output_tokens"] = min(
                values["max_output_tokens"], self.max_output_tokens_cap
            )
        if request.response_format and request.response_format.get("type") in (
            "json_object",
            "json_schema",
        ):
            values["response_mime_type"] = "application/json"

        values["thinking_config"] = thinking_config_for(decoded)
        try:
            return GenerationConfig.model_validate(values)
        except ValidationError as e:
            raise TranslationError(
                "Invalid sampling parameters",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    def to_chat_request(self, upstream: UpstreamRequest, model: str) -> ChatRequest:
        """Inverse of ``to_upstream``, used to check the request shape round trip."""
        messages: list[ChatMessage] = []
        if upstream.system_instruction is not None:
            for part in upstream.system_instruction.parts:
                messages.append(ChatMessage(role="system", content=part.text or ""))

        for content in upstream.contents:
            role = "assistant" if content.role == "model" else "user"
            messages.append(ChatMessage(role=role, content=self._parts_to_content(content.parts)))

        data: dict[str, Any] = {"model": model, "messages": messages}
        config = upstream.generation_config
        if config is not None:
            data.update(
                {
                    "temperature": config.temperature,
                    "top_p": config.top_p,
                    "top_k": config.top_k,
                    "n": config.candidate_count,
                    "presence_penalty": config.presence_penalty,
                    "frequency_penalty": config.frequency_penalty,
                    "seed": config.seed,
                    "stop": config.stop_sequences,
                    "max_tokens": config.max_output_tokens,
                }
            )
        return ChatRequest.model_validate(
            {k: v for k, v in data.items() if v is not None}
        )

    @staticmethod
    def _parts_to_content(parts: list[Part]) -> str | list[MessageContentPart]:
        if all(p.inline_data is None for p in parts):
            return "".join(p.text or "" for p in parts)
        items: list[MessageContentPart] = []
        for part in parts:
            if part.inline_data is not None:
                url = f"data:{part.inline_data.mime_type};base64,{part.inline_data.data}"
                items.append(MessageContentPartImage(image_url=ImageURL(url=url)))
            elif part.text:
                items.append(MessageContentPartText(text=part.text))
        return items

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    @staticmethod
    def parse_upstream(payload: Any) -> UpstreamResponse:
        """Validate an upstream JSON payload, unwrapping the ``response`` envelope.

        Raises:
            TranslationError: If the payload is not a generate-content response
        """
        if isinstance(payload, dict) and isinstance(payload.get("response"), dict):
            payload = payload["response"]
        if not isinstance(payload, dict):
            raise TranslationError(
                "Upstream returned a malformed payload", status_code=502
            )
        try:
            return UpstreamResponse.model_validate(payload)
        except ValidationError as e:
            raise TranslationError(
                "Upstream returned a malformed payload",
                details={"errors": e.errors(include_url=False, include_context=False)},
                status_code=502,
            ) from e

    def from_upstream(
        self,
        response: UpstreamResponse,
        model: str,
        request: ChatRequest | None = None,
    ) -> ChatResponse:
        """Translate a complete upstream response into a chat completion.

        Raises:
            TranslationError: If the response has no candidates and was not
                blocked by a prompt filter
        """
        choices: list[ChatCompletionChoice] = []
        for i, candidate in enumerate(response.candidates):
            parts = candidate.content.parts if candidate.content else []
            text, reasoning = split_parts(parts)
            choices.append(
                ChatCompletionChoice(
                    index=candidate.index if candidate.index is not None else i,
                    message=ChatCompletionChoiceMessage(
                        role="assistant",
                        content=text,
                        reasoning_content=reasoning or None,
                    ),
                    finish_reason=map_finish_reason(candidate.finish_reason) or "stop",
                )
            )

        if not choices:
            feedback = response.prompt_feedback or {}
            if feedback.get("blockReason"):
                choices.append(
                    ChatCompletionChoice(
                        index=0,
                        message=ChatCompletionChoiceMessage(content=""),
                        finish_reason="content_filter",
                    )
                )
            else:
                raise TranslationError(
                    "Upstream response contains no candidates", status_code=502
                )

        return ChatResponse(
            model=model,
            choices=choices,
            usage=self._usage(response.usage_metadata, request, choices[0].message.content or ""),
        )

    def _usage(
        self,
        metadata: UsageMetadata | None,
        request: ChatRequest | None,
        completion_text: str,
    ) -> ChatUsage | None:
        usage = usage_from_metadata(metadata)
        if usage is not None:
            return usage
        if request is None:
            return None
        return self.usage_estimator.estimate(request.messages, completion_text)

    def to_stream_chunk(
        self,
        increment: UpstreamResponse,
        model: str,
        completion_id: str,
        *,
        include_role: bool = False,
        created: int | None = None,
    ) -> StreamChunk | None:
        """Translate one upstream stream increment into a chunk delta.

        Returns None when the increment carries nothing to relay.
        """
        choices: list[StreamChoice] = []
        for i, candidate in enumerate(increment.candidates):
            parts = candidate.content.parts if candidate.content else []
            text, reasoning = split_parts(parts)
            finish_reason = map_finish_reason(candidate.finish_reason)
            if not text and not reasoning and finish_reason is None and not include_role:
                continue
            choices.append(
                StreamChoice(
                    index=candidate.index if candidate.index is not None else i,
                    delta=StreamDelta(
                        role="assistant" if include_role else None,
                        content=text or None,
                        reasoning_content=reasoning or None,
                    ),
                    finish_reason=finish_reason,
                )
            )
        usage = usage_from_metadata(increment.usage_metadata)
        if not choices and usage is None:
            return None
        return StreamChunk(
            id=completion_id,
            created=created if created is not None else int(time.time()),
            model=model,
            choices=choices,
            usage=usage,
        )


def usage_from_metadata(metadata: UsageMetadata | None) -> ChatUsage | None:
    if metadata is None or metadata.prompt_token_count is None:
        return None
    prompt = metadata.prompt_token_count or 0
    completion = (metadata.candidates_token_count or 0) + (
        metadata.thoughts_token_count or 0
    )
    total = metadata.total_token_count or prompt + completion
    return ChatUsage(
        prompt_tokens=prompt, completion_tokens=completion, total_tokens=total
    )

