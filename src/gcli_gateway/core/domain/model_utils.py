"""
Model Utilities

Decoding of client-facing model names. A name may carry two kinds of suffix:

- the synthesized-streaming marker (``-假流式`` by default), always last;
- a thinking variant (``-maxthinking`` or ``-nothinking``).

Names are decoded once per request into a ``DecodedModel``; nothing else in
the gateway parses model names.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from gcli_gateway.core.domain.gemini import ThinkingConfig
from gcli_gateway.core.interfaces.model_bases import InternalDTO

MAX_THINKING_SUFFIX = "-maxthinking"
NO_THINKING_SUFFIX = "-nothinking"

MAX_THINKING_BUDGET = 32768
NO_THINKING_BUDGET = 128
DYNAMIC_THINKING_BUDGET = -1


class StreamingMode(str, Enum):
    NATIVE = "native"
    SYNTHESIZED = "synthesized"


class ThinkingVariant(str, Enum):
    DEFAULT = "default"
    MAX = "max"
    NONE = "none"


@dataclass(frozen=True)
class DecodedModel(InternalDTO):
    """Result of decoding a client-facing model name."""

    requested_name: str
    upstream_model: str
    streaming_mode: StreamingMode
    thinking: ThinkingVariant = ThinkingVariant.DEFAULT

    @property
    def is_synthesized(self) -> bool:
        return self.streaming_mode is StreamingMode.SYNTHESIZED


def decode_model(name: str, fake_stream_suffix: str) -> DecodedModel:
    """Split a client model name into the upstream model id and its markers.

    Args:
        name: Model name as sent by the client
        fake_stream_suffix: Suffix selecting synthesized streaming

    Returns:
        The decoded model
    """
    base = name.strip()
    mode = StreamingMode.NATIVE
    if fake_stream_suffix and base.endswith(fake_stream_suffix):
        base = base[: -len(fake_stream_suffix)]
        mode = StreamingMode.SYNTHESIZED

    thinking = ThinkingVariant.DEFAULT
    if base.endswith(MAX_THINKING_SUFFIX):
        base = base[: -len(MAX_THINKING_SUFFIX)]
        thinking = ThinkingVariant.MAX
    elif base.endswith(NO_THINKING_SUFFIX):
        base = base[: -len(NO_THINKING_SUFFIX)]
        thinking = ThinkingVariant.NONE

    return DecodedModel(
        requested_name=name,
        upstream_model=base,
        streaming_mode=mode,
        thinking=thinking,
    )


def is_image_model(model: str) -> bool:
    return "gemini-2.5-flash-image" in model


def thinking_config_for(decoded: DecodedModel) -> ThinkingConfig | None:
    """Thinking configuration for the decoded model, or None for image models."""
    if is_image_model(decoded.upstream_model):
        return None
    if decoded.thinking is ThinkingVariant.MAX:
        return ThinkingConfig(thinking_budget=MAX_THINKING_BUDGET, include_thoughts=True)
    if decoded.thinking is ThinkingVariant.NONE:
        # Only gemini-2.5-pro reports thoughts at the minimum budget
        return ThinkingConfig(
            thinking_budget=NO_THINKING_BUDGET,
            include_thoughts="gemini-2.5-pro" in decoded.upstream_model,
        )
    return ThinkingConfig(thinking_budget=DYNAMIC_THINKING_BUDGET, include_thoughts=True)


def list_model_ids(models: list[str], fake_stream_suffix: str) -> list[str]:
    """Every configured model in native and synthesized-streaming form."""
    result: list[str] = []
    for model in models:
        result.append(model)
        if fake_stream_suffix:
            result.append(f"{model}{fake_stream_suffix}")
    return result
