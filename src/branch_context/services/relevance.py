"""Lexical relevance scoring."""

import re

_PUNCTUATION = re.compile(r"[^\w\s]|_")


def tokenize(text: str) -> set[str]:
    """Lowercase, strip punctuation and split on whitespace."""
    return set(_PUNCTUATION.sub(" ", text.lower()).split())


def jaccard_similarity(left: set[str], right: set[str]) -> float:
    """Jaccard index of two token sets.

    Two empty sets score 1.0; one empty set scores 0.0.
    """
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def relevance_score(content: str, prompt: str) -> float:
    """Score candidate content against the active prompt (0.0-1.0).

    Args:
        content: Candidate node content
        prompt: Active prompt

    Returns:
        Jaccard similarity of the normalized token sets
    """
    return jaccard_similarity(tokenize(content), tokenize(prompt))
