"""
Token counting and usage tracking.

Holds reported token usage and the character-based fallback used when a
provider stream ends without reporting usage.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping

from .credit_math import normalize_token_count

DEFAULT_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    ``estimated`` is True when the counts come from the character-length
    fallback rather than from the provider.
    """
    prompt_tokens: int
    completion_tokens: int
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "estimated": self.estimated,
        }

    @classmethod
    def from_counts(cls, prompt_tokens, completion_tokens) -> "TokenUsage":
        return cls(
            prompt_tokens=normalize_token_count(prompt_tokens),
            completion_tokens=normalize_token_count(completion_tokens),
        )


def _message_length(messages: Iterable[Mapping[str, Any]]) -> int:
    length = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            length += len(content)
    return length


def estimate_usage(
    messages: Iterable[Mapping[str, Any]],
    reply_text: str,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
) -> TokenUsage:
    """Approximate token usage from character counts.

    This is only an estimate for billing when the provider omits usage; it is
    not a reconciliation figure against the provider's own counts.
    """
    if chars_per_token <= 0:
        raise ValueError("chars_per_token must be > 0")
    return TokenUsage(
        prompt_tokens=math.ceil(_message_length(messages) / chars_per_token),
        completion_tokens=math.ceil(len(reply_text or "") / chars_per_token),
        estimated=True,
    )
