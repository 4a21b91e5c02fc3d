"""
Thread-safe token usage accumulator for LLM fallback calls.

One tracker is created per document request and passed by reference to every
page extraction, so concurrent documents never share counters.
"""

import threading
from typing import Any, Optional

from src.schemas import TokenUsage

_INPUT_KEYS = ("prompt_tokens", "input_tokens", "promptTokens", "inputTokens")
_OUTPUT_KEYS = ("completion_tokens", "output_tokens", "completionTokens", "outputTokens")
_TOTAL_KEYS = ("total_tokens", "totalTokens")


def _read_count(usage: Any, keys) -> Optional[int]:
    """Return the first non-None count found under any of ``keys``."""
    for key in keys:
        if isinstance(usage, dict):
            value = usage.get(key)
        else:
            value = getattr(usage, key, None)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


class TokenTracker:
    """Running totals of input/output/total tokens."""

    def __init__(self):
        self._lock = threading.Lock()
        self.total_tokens = 0
        self.input_tokens = 0
        self.output_tokens = 0

    def add(self, usage: Any) -> None:
        """
        Merge one usage record.

        Accepts a TokenUsage, an OpenAI ``CompletionUsage`` or a plain dict in
        any of the common key spellings. The explicit total wins when present,
        otherwise input + output is used.
        """
        if usage is None:
            return

        input_tokens = _read_count(usage, _INPUT_KEYS) or 0
        output_tokens = _read_count(usage, _OUTPUT_KEYS) or 0
        total = _read_count(usage, _TOTAL_KEYS)
        if total is None:
            total = input_tokens + output_tokens

        with self._lock:
            self.input_tokens += input_tokens
            self.output_tokens += output_tokens
            self.total_tokens += total

    def snapshot(self) -> TokenUsage:
        with self._lock:
            return TokenUsage(
                total_tokens=self.total_tokens,
                input_tokens=self.input_tokens,
                output_tokens=self.output_tokens,
            )

    def reset(self) -> None:
        with self._lock:
            self.total_tokens = 0
            self.input_tokens = 0
            self.output_tokens = 0
