"""Strategy and priority inference from prompt text."""

import re
from collections.abc import Callable
from dataclasses import dataclass

from branch_context.models.context import (
    CategoryWeights,
    ContentPriority,
    ContextStrategy,
)

FOCUSED_MAX_WORDS = 25

DEFAULT_PRIORITIES: dict[ContextStrategy, ContentPriority] = {
    ContextStrategy.ANALYTICAL: ContentPriority.COMPLETENESS,
    ContextStrategy.EXPLORATORY: ContentPriority.BREADTH,
    ContextStrategy.REFERENCE_HEAVY: ContentPriority.RELEVANCE,
    ContextStrategy.FOCUSED: ContentPriority.RELEVANCE,
    ContextStrategy.COMPREHENSIVE: ContentPriority.RELEVANCE,
    ContextStrategy.CREATIVE: ContentPriority.BREADTH,
    ContextStrategy.MINIMAL: ContentPriority.RECENCY,
}

# Category proportions: ancestors, siblings, references, summaries
STRATEGY_WEIGHTS: dict[ContextStrategy, CategoryWeights] = {
    ContextStrategy.FOCUSED: CategoryWeights(
        ancestors=0.7, siblings=0.1, references=0.15, summaries=0.05
    ),
    ContextStrategy.EXPLORATORY: CategoryWeights(
        ancestors=0.3, siblings=0.5, references=0.1, summaries=0.1
    ),
    ContextStrategy.REFERENCE_HEAVY: CategoryWeights(
        ancestors=0.3, siblings=0.1, references=0.5, summaries=0.1
    ),
    ContextStrategy.MINIMAL: CategoryWeights(
        ancestors=0.6, siblings=0.1, references=0.2, summaries=0.1
    ),
    ContextStrategy.ANALYTICAL: CategoryWeights(
        ancestors=0.4, siblings=0.3, references=0.2, summaries=0.1
    ),
    ContextStrategy.CREATIVE: CategoryWeights(
        ancestors=0.2, siblings=0.4, references=0.2, summaries=0.2
    ),
    ContextStrategy.COMPREHENSIVE: CategoryWeights(
        ancestors=0.4, siblings=0.3, references=0.2, summaries=0.1
    ),
}

_COMPARISON = re.compile(
    r"\b(compare|comparison|comparing|versus|vs\.?|difference between|contrast|analy[sz]e)\b"
)
_IDEATION = re.compile(r"\b(brainstorm\w*|ideas?|alternatives?|options?)\b")
_CREATIVE = re.compile(r"\b(design|creative|story|stories|imagine)\b")
_HOW_TO = re.compile(r"^\s*(how (to|do|does|can)|what (is|are)|explain)\b")


@dataclass(frozen=True)
class PromptFeatures:
    """Prompt facts the rule predicates look at."""

    text: str
    word_count: int
    has_references: bool


@dataclass(frozen=True)
class StrategyRule:
    """One inference rule; the first matching rule wins."""

    name: str
    predicate: Callable[[PromptFeatures], bool]
    strategy: ContextStrategy


STRATEGY_RULES: tuple[StrategyRule, ...] = (
    StrategyRule(
        "explicit_references",
        lambda f: f.has_references,
        ContextStrategy.REFERENCE_HEAVY,
    ),
    StrategyRule(
        "comparison",
        lambda f: bool(_COMPARISON.search(f.text)),
        ContextStrategy.ANALYTICAL,
    ),
    StrategyRule(
        "ideation",
        lambda f: bool(_IDEATION.search(f.text)),
        ContextStrategy.EXPLORATORY,
    ),
    StrategyRule(
        "creative",
        lambda f: bool(_CREATIVE.search(f.text)),
        ContextStrategy.CREATIVE,
    ),
    StrategyRule(
        "direct_question",
        lambda f: f.word_count <= FOCUSED_MAX_WORDS and bool(_HOW_TO.search(f.text)),
        ContextStrategy.FOCUSED,
    ),
)


def infer_strategy(
    prompt: str,
    has_references: bool = False,
    rules: tuple[StrategyRule, ...] = STRATEGY_RULES,
) -> ContextStrategy:
    """Infer a strategy from prompt text.

    ``minimal`` is never inferred; it is only reachable by override.

    Args:
        prompt: Prompt text
        has_references: Whether the request carries resolved references
        rules: Ordered rule table

    Returns:
        The strategy of the first matching rule, else comprehensive
    """
    text = prompt.lower()
    features = PromptFeatures(
        text=text,
        word_count=len(text.split()),
        has_references=has_references,
    )
    for rule in rules:
        if rule.predicate(features):
            return rule.strategy
    return ContextStrategy.COMPREHENSIVE


def default_priority(strategy: ContextStrategy) -> ContentPriority:
    """Get the default priority dimension of a strategy."""
    return DEFAULT_PRIORITIES[strategy]


def select_strategy(
    prompt: str,
    has_references: bool = False,
    strategy: ContextStrategy | None = None,
    priority: ContentPriority | None = None,
) -> tuple[ContextStrategy, ContentPriority]:
    """Resolve strategy and priority, honoring explicit overrides.

    Args:
        prompt: Prompt text
        has_references: Whether the request carries resolved references
        strategy: Explicit strategy override
        priority: Explicit priority override

    Returns:
        Tuple of (strategy, priority)
    """
    chosen = strategy or infer_strategy(prompt, has_references)
    return chosen, priority or default_priority(chosen)


def category_weights(
    strategy: ContextStrategy, custom: CategoryWeights | None = None
) -> CategoryWeights:
    """Category proportions for a build; custom weights override the table."""
    return custom or STRATEGY_WEIGHTS[strategy]
