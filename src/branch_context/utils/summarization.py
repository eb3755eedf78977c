"""Extractive summarization utilities."""

import re
from collections import Counter

from branch_context.utils.token_counter import TokenCounter, truncate_to_token_limit

STOP_WORDS = frozenset(
    {
        "the",
        "a",
        "an",
        "is",
        "are",
        "was",
        "were",
        "be",
        "been",
        "being",
        "have",
        "has",
        "had",
        "do",
        "does",
        "did",
        "will",
        "would",
        "could",
        "should",
        "may",
        "might",
        "must",
        "shall",
        "の",
        "は",
        "が",
        "を",
        "に",
        "で",
        "と",
        "も",
        "や",
        "から",
    }
)


def split_sentences(text: str) -> list[str]:
    """Split text into sentences.

    Args:
        text: Input text

    Returns:
        List of sentences
    """
    # Handle Japanese and English sentence boundaries
    pattern = r"(?<=[。！？.!?])\s*"
    sentences = re.split(pattern, text)
    return [s.strip() for s in sentences if s.strip()]


def calculate_word_frequency(text: str) -> dict[str, float]:
    """Calculate normalized word frequency.

    Args:
        text: Input text

    Returns:
        Dictionary of word -> frequency score
    """
    words = re.findall(r"\w+", text.lower())
    filtered = [w for w in words if w not in STOP_WORDS and len(w) > 1]
    counter = Counter(filtered)

    max_freq = max(counter.values()) if counter else 1
    return {word: count / max_freq for word, count in counter.items()}


def score_sentence(sentence: str, word_freq: dict[str, float]) -> float:
    """Score a sentence by the average frequency of its words."""
    words = re.findall(r"\w+", sentence.lower())
    if not words:
        return 0.0

    score = sum(word_freq.get(w, 0) for w in words)
    # Normalize by sentence length to avoid bias toward long sentences
    return score / len(words)


def extractive_summary_by_tokens(
    text: str,
    target_tokens: int,
    counter: TokenCounter,
    model: str,
) -> tuple[str, int, int]:
    """Generate extractive summary to fit within token budget.

    Sentences are ranked by word frequency and kept in original order.
    The result never exceeds ``target_tokens``; a leading sentence that is
    too long on its own is cut to the limit.

    Args:
        text: Input text to summarize
        target_tokens: Target token count for summary
        counter: Token counter
        model: Model name for token counting

    Returns:
        Tuple of (summary text, original tokens, summary tokens)
    """
    if not text or target_tokens <= 0:
        return "", counter.count(text, model) if text else 0, 0

    original_tokens = counter.count(text, model)
    if original_tokens <= target_tokens:
        return text, original_tokens, original_tokens

    sentences = split_sentences(text)
    if not sentences:
        truncated, truncated_tokens, _ = truncate_to_token_limit(
            text, target_tokens, counter, model
        )
        return truncated, original_tokens, truncated_tokens

    word_freq = calculate_word_frequency(text)
    # Stable sort keeps earlier sentences first among equal scores
    ranked = sorted(
        enumerate(sentences),
        key=lambda item: score_sentence(item[1], word_freq),
        reverse=True,
    )

    selected: set[int] = set()
    cumulative_tokens = 0
    for index, sentence in ranked:
        sentence_tokens = counter.count(sentence, model)
        if cumulative_tokens + sentence_tokens <= target_tokens:
            selected.add(index)
            cumulative_tokens += sentence_tokens

    if not selected:
        # Best sentence alone is too long, include it partially
        best = ranked[0][1]
        truncated, truncated_tokens, _ = truncate_to_token_limit(
            best, target_tokens, counter, model
        )
        return truncated, original_tokens, truncated_tokens

    summary = " ".join(sentences[i] for i in sorted(selected))
    summary, summary_tokens, _ = truncate_to_token_limit(summary, target_tokens, counter, model)
    return summary, original_tokens, summary_tokens
