"""Unified token estimation.

Single source of truth for the language-aware token heuristic used
throughout the codebase. These are approximations for budgeting, not
tokenizer-exact counts:

- Latin-script prose costs ~1 token per 4 characters.
- CJK ideographs, kana and hangul cost ~1 token per 1.67 characters.
- Code-like text (braces, brackets, semicolons) costs ~0.3 tokens/char.
- JSON and Markdown carry a fixed structural overhead on top.
"""

from __future__ import annotations

import math
import re

LATIN_TOKENS_PER_CHAR = 0.25
CODE_TOKENS_PER_CHAR = 0.3
CJK_TOKENS_PER_CHAR = 0.6
MESSAGE_ENVELOPE_TOKENS = 4

_CJK_CLASS = "\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af"
_CJK_RE = re.compile(f"[{_CJK_CLASS}]")
_CODE_RE = re.compile(r"[{}\[\];<>]|=>|```")
_SPECIAL_RE = re.compile(rf"[^\w\s{_CJK_CLASS}]")
_SENTENCE_END_RE = re.compile(r"[.!?。！？\n]")

# Only back off to a sentence boundary inside the tail of the cut.
_SENTENCE_BACKOFF_WINDOW = 0.3


def _structural_overhead(text: str) -> float:
    overhead = 0.0
    if "{" in text and "}" in text:
        overhead += len(text) * 0.05
    if "#" in text or "```" in text:
        overhead += len(text) * 0.02
    overhead += len(_SPECIAL_RE.findall(text)) * 0.1
    return overhead


def estimate_tokens(text: str) -> int:
    """Estimate token count for text. Returns 0 for empty text.

    The estimate is monotonic in prefix length: a prefix never costs
    more than the full string.
    """
    if not text:
        return 0
    cjk_chars = len(_CJK_RE.findall(text))
    other_chars = len(text) - cjk_chars
    ratio = CODE_TOKENS_PER_CHAR if _CODE_RE.search(text) else LATIN_TOKENS_PER_CHAR
    raw = other_chars * ratio + cjk_chars * CJK_TOKENS_PER_CHAR
    return math.ceil(raw + _structural_overhead(text))


def estimate_message_tokens(content: str) -> int:
    """Estimate one chat message, including the role/separator envelope."""
    return estimate_tokens(content) + MESSAGE_ENVELOPE_TOKENS


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text to at most ``max_tokens`` estimated tokens.

    Binary-searches the longest fitting prefix, then backs off to the
    last sentence boundary when one falls near the end of that prefix.
    """
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text

    low, high, best = 0, len(text), 0
    while low <= high:
        mid = (low + high) // 2
        if estimate_tokens(text[:mid]) <= max_tokens:
            best = mid
            low = mid + 1
        else:
            high = mid - 1

    prefix = text[:best]
    boundary = -1
    for match in _SENTENCE_END_RE.finditer(prefix):
        boundary = match.end()
    if boundary > 0 and boundary >= best * (1 - _SENTENCE_BACKOFF_WINDOW):
        return prefix[:boundary].rstrip()
    return prefix


def format_token_count(tokens: int) -> str:
    """Render a token count compactly (``950``, ``12.3k``)."""
    if tokens < 1000:
        return str(tokens)
    return f"{tokens / 1000:.1f}k"
