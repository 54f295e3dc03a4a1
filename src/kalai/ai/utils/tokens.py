"""Token estimation utilities for AI operations."""

from __future__ import annotations

import math

# Average characters per token for English prose (GPT-style tokenization)
CHARS_PER_TOKEN = 4.0
TRUNCATION_MARKER = "\n... [content truncated] ...\n"


def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in a text string.

    Uses a simple byte-based heuristic of ~4 bytes per token.
    This provides a reasonable approximation for English prose
    with GPT-style tokenization.

    Args:
        text: The text to estimate tokens for.

    Returns:
        Estimated token count (minimum 1 for non-empty text, 0 for empty).
    """
    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / CHARS_PER_TOKEN))


def truncate_to_tokens(text: str, max_tokens: int, *, marker: str = TRUNCATION_MARKER) -> str:
    """Shrink ``text`` to ``max_tokens`` keeping its head and tail around ``marker``.

    Returns the text unchanged when it already fits and an empty string when
    not even the marker fits in the budget.
    """
    if estimate_tokens(text) <= max_tokens:
        return text
    if max_tokens <= 0 or estimate_tokens(marker) > max_tokens:
        return ""
    keep_chars = int((max_tokens - estimate_tokens(marker)) * CHARS_PER_TOKEN)
    while keep_chars > 0:
        head_len = (keep_chars + 1) // 2
        tail_len = keep_chars // 2
        tail = text[-tail_len:] if tail_len else ""
        candidate = f"{text[:head_len]}{marker}{tail}"
        if estimate_tokens(candidate) <= max_tokens:
            return candidate
        keep_chars -= max(1, keep_chars // 10)
    return marker


__all__ = ["CHARS_PER_TOKEN", "TRUNCATION_MARKER", "estimate_tokens", "truncate_to_tokens"]
