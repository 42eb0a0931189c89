"""Token usage normalization across provider payload shapes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

_INPUT_KEYS = ("input_tokens", "prompt_tokens", "inputTokens", "promptTokens")
_OUTPUT_KEYS = ("output_tokens", "completion_tokens", "outputTokens", "completionTokens")
_TOTAL_KEYS = ("total_tokens", "totalTokens")


@dataclass
class Usage:
    """Token counts for one or more model calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


def _first_int(raw: dict[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
    return None


def normalize_usage(raw: Any) -> Usage:
    """Map any known usage shape onto Usage.

    Accepts ``{prompt_tokens, completion_tokens, total_tokens}``,
    ``{input_tokens, output_tokens}`` and camelCase variants.  Missing
    usage yields zeros; a missing total is the sum of the other two.
    """
    if isinstance(raw, Usage):
        return raw
    if not isinstance(raw, dict):
        return Usage()

    input_tokens = _first_int(raw, _INPUT_KEYS) or 0
    output_tokens = _first_int(raw, _OUTPUT_KEYS) or 0
    total = _first_int(raw, _TOTAL_KEYS)
    if total is None:
        total = input_tokens + output_tokens
    return Usage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)
