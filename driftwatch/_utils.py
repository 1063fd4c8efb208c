"""Shared text helpers for drift scoring and summarization."""

from __future__ import annotations

import math
import re

WORD_RE = re.compile(r"[a-z0-9][a-z0-9_'-]*")


def words(text: str) -> list[str]:
    return WORD_RE.findall(text.lower())


def tokenize(text: str) -> set[str]:
    return set(words(text))


def keyword_overlap(pattern: str, text: str) -> float:
    """
    Fraction of the pattern's words that appear in ``text``.

    1.0 when the pattern has no words (nothing to violate).
    """
    pattern_words = tokenize(pattern)
    if not pattern_words:
        return 1.0
    return len(pattern_words & tokenize(text)) / len(pattern_words)


def clamp01(value: float, default: float = 0.5) -> float:
    """Clamp a possibly noisy score into [0, 1]."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(numeric):
        return default
    return max(0.0, min(1.0, numeric))
