"""
Token usage estimation for responses where the upstream reports no counts.

The estimate is not used for anything load-bearing; pick the policy with
``usage_estimator`` in the configuration.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Any

import tiktoken

from gcli_gateway.core.domain.chat import ChatMessage, ChatUsage

logger = logging.getLogger(__name__)


def extract_prompt_text(messages: list[ChatMessage]) -> str:
    """Flatten chat messages into ``role: text`` lines."""
    return "\n".join(f"{m.role}: {m.text_content()}" for m in messages)


class UsageEstimator(ABC):
    """Policy for estimating token usage."""

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass

    def estimate(self, messages: list[ChatMessage], completion_text: str) -> ChatUsage:
        prompt_tokens = self.count_tokens(extract_prompt_text(messages))
        completion_tokens = self.count_tokens(completion_text)
        return ChatUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


class CharacterRatioUsageEstimator(UsageEstimator):
    """``ceil(len(text) / chars_per_token)`` tokens per text."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)


class TiktokenUsageEstimator(UsageEstimator):
    """Counts with a tiktoken encoding (``cl100k_base`` by default).

    The encoding is loaded on first use. If it cannot be loaded the estimator
    falls back to the character ratio.
    """

    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self.encoding_name = encoding_name
        self._encoding: Any = None
        self._fallback: CharacterRatioUsageEstimator | None = None

    def _get_encoding(self) -> Any:
        if self._encoding is None and self._fallback is None:
            try:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            except Exception as e:
                logger.warning(
                    "Could not load tiktoken encoding %s, estimating by characters: %s",
                    self.encoding_name,
                    e,
                )
                self._fallback = CharacterRatioUsageEstimator()
        return self._encoding

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        encoding = self._get_encoding()
        if encoding is None:
            assert self._fallback is not None
            return self._fallback.count_tokens(text)
        return len(encoding.encode(text, disallowed_special=()))


def create_usage_estimator(name: str) -> UsageEstimator:
    if name == "tiktoken":
        return TiktokenUsageEstimator()
    if name == "chars":
        return CharacterRatioUsageEstimator()
    raise ValueError(f"Unknown usage estimator: {name}")
