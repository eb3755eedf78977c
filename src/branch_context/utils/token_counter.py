"""Token counting utilities backed by tiktoken, plus a cheap estimator."""

import math
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Literal

import tiktoken

DEFAULT_ENCODING = "cl100k_base"

# Encodings for model families tiktoken does not know by name
MODEL_ENCODINGS: dict[str, str] = {
    "gpt-4": "cl100k_base",
    "gpt-4-turbo": "cl100k_base",
    "gpt-4o": "o200k_base",
    "gpt-4o-mini": "o200k_base",
    "gpt-3.5-turbo": "cl100k_base",
    "claude-3-opus": "cl100k_base",
    "claude-3-sonnet": "cl100k_base",
    "claude-3-haiku": "cl100k_base",
    "claude-3.5-sonnet": "cl100k_base",
}

CounterKind = Literal["tiktoken", "estimate"]


def _normalize_model(model: str) -> str:
    # Provider-qualified ids such as "openai/gpt-4o"
    return model.rsplit("/", 1)[-1].lower()


@lru_cache(maxsize=32)
def get_encoding(model: str) -> "tiktoken.Encoding":
    """Resolve (and memoize) the tiktoken encoding for a model id.

    Args:
        model: Model identifier, optionally provider-qualified

    Returns:
        tiktoken encoding
    """
    name = _normalize_model(model)
    if name in MODEL_ENCODINGS:
        return tiktoken.get_encoding(MODEL_ENCODINGS[name])
    try:
        return tiktoken.encoding_for_model(name)
    except KeyError:
        # Fallback to cl100k_base for unknown models
        return tiktoken.get_encoding(DEFAULT_ENCODING)


def count_tokens(text: str, model: str = "gpt-4o") -> int:
    """Count tokens using tiktoken (accurate method).

    Args:
        text: Text to count tokens for
        model: Model name for tokenizer

    Returns:
        Exact token count
    """
    if not text:
        return 0
    return len(get_encoding(model).encode(text))


def estimate_tokens(text: str) -> int:
    """Estimate token count without a tokenizer.

    Uses character-based estimation with different ratios for
    Japanese/CJK characters vs English words.

    Args:
        text: Text to estimate tokens for

    Returns:
        Estimated token count
    """
    if not text:
        return 0

    # Count CJK characters (Japanese, Chinese, Korean)
    cjk_count = sum(
        1
        for char in text
        if "\u4e00" <= char <= "\u9fff"  # CJK Unified Ideographs
        or "\u3040" <= char <= "\u309f"  # Hiragana
        or "\u30a0" <= char <= "\u30ff"  # Katakana
        or "\uac00" <= char <= "\ud7af"  # Hangul
    )

    # CJK: approximately 0.7 tokens per character
    # English: approximately len/4 (rough average), rounded up
    cjk_tokens = int(cjk_count * 0.7)
    remaining_chars = len(text) - cjk_count
    english_tokens = math.ceil(remaining_chars / 4)

    return cjk_tokens + english_tokens


class TokenCounter(ABC):
    """Model-aware token counter. Must be deterministic per model id."""

    @abstractmethod
    def count(self, text: str, model: str) -> int:
        """Count tokens of ``text`` for ``model``."""
        pass


class TiktokenCounter(TokenCounter):
    """Exact counter using the model's tiktoken encoding."""

    def count(self, text: str, model: str) -> int:
        return count_tokens(text, model)


class EstimatingTokenCounter(TokenCounter):
    """Character-ratio estimator; model id is ignored."""

    def count(self, text: str, model: str) -> int:
        return estimate_tokens(text)


def create_token_counter(kind: CounterKind) -> TokenCounter:
    """Build the counter named in settings.

    Args:
        kind: "tiktoken" or "estimate"

    Returns:
        Token counter instance
    """
    if kind == "estimate":
        return EstimatingTokenCounter()
    return TiktokenCounter()


def truncate_to_token_limit(
    text: str,
    max_tokens: int,
    counter: TokenCounter,
    model: str,
) -> tuple[str, int, bool]:
    """Cut text to the longest prefix that fits within ``max_tokens``.

    Binary search over character offsets, so it works with any counter.

    Args:
        text: Text to truncate
        max_tokens: Token limit (values below 0 are treated as 0)
        counter: Token counter
        model: Model id for counting

    Returns:
        Tuple of (text, token count, truncated flag)
    """
    limit = max(0, max_tokens)
    current = counter.count(text, model)
    if current <= limit:
        return text, current, False

    low, high = 0, len(text)
    best = ""
    while low <= high:
        mid = (low + high) // 2
        candidate = text[:mid]
        if counter.count(candidate, model) <= limit:
            best = candidate
            low = mid + 1
        else:
            high = mid - 1

    best = best.rstrip()
    return best, counter.count(best, model), True
