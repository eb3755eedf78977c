"""Tests for strategy and priority inference."""

import pytest

from branch_context.models.context import CategoryWeights, ContentPriority, ContextStrategy
from branch_context.services.strategy_selector import (
    STRATEGY_RULES,
    STRATEGY_WEIGHTS,
    StrategyRule,
    category_weights,
    default_priority,
    infer_strategy,
    select_strategy,
)


class TestInferStrategy:
    """Test the ordered rule table."""

    @pytest.mark.parametrize(
        ("prompt", "expected"),
        [
            ("Compare the two approaches", ContextStrategy.ANALYTICAL),
            ("postgres versus mysql for this workload", ContextStrategy.ANALYTICAL),
            ("What is the difference between them?", ContextStrategy.ANALYTICAL),
            ("Let's brainstorm some ideas", ContextStrategy.EXPLORATORY),
            ("Give me alternatives", ContextStrategy.EXPLORATORY),
            ("Write a short story about it", ContextStrategy.CREATIVE),
            ("design a logo concept", ContextStrategy.CREATIVE),
            ("How to add an index?", ContextStrategy.FOCUSED),
            ("What is a btree", ContextStrategy.FOCUSED),
            ("Continue from here please", ContextStrategy.COMPREHENSIVE),
        ],
    )
    def test_keyword_rules(self, prompt, expected):
        assert infer_strategy(prompt) is expected

    def test_references_take_precedence_over_comparison(self):
        prompt = "Compare @a1b2c3d4 with the previous answer"
        assert infer_strategy(prompt, has_references=True) is ContextStrategy.REFERENCE_HEAVY
        assert infer_strategy(prompt, has_references=False) is ContextStrategy.ANALYTICAL

    def test_long_how_to_is_not_focused(self):
        prompt = "how to " + " ".join(["word"] * 40)
        assert infer_strategy(prompt) is ContextStrategy.COMPREHENSIVE

    def test_minimal_is_never_inferred(self):
        prompts = ["", "minimal", "tight budget please", "short"]
        assert all(infer_strategy(p) is not ContextStrategy.MINIMAL for p in prompts)

    def test_deterministic(self):
        prompt = "brainstorm a design versus a story"
        assert {infer_strategy(prompt) for _ in range(5)} == {ContextStrategy.ANALYTICAL}

    def test_custom_rule_table(self):
        rules = (
            StrategyRule("always_minimal", lambda f: True, ContextStrategy.MINIMAL),
            *STRATEGY_RULES,
        )
        assert infer_strategy("compare", rules=rules) is ContextStrategy.MINIMAL


class TestPriorities:
    """Test default priorities and overrides."""

    @pytest.mark.parametrize(
        ("strategy", "priority"),
        [
            (ContextStrategy.ANALYTICAL, ContentPriority.COMPLETENESS),
            (ContextStrategy.EXPLORATORY, ContentPriority.BREADTH),
            (ContextStrategy.REFERENCE_HEAVY, ContentPriority.RELEVANCE),
            (ContextStrategy.FOCUSED, ContentPriority.RELEVANCE),
            (ContextStrategy.COMPREHENSIVE, ContentPriority.RELEVANCE),
            (ContextStrategy.CREATIVE, ContentPriority.BREADTH),
            (ContextStrategy.MINIMAL, ContentPriority.RECENCY),
        ],
    )
    def test_default_priority(self, strategy, priority):
        assert default_priority(strategy) is priority

    def test_overrides(self):
        strategy, priority = select_strategy(
            "compare these",
            strategy=ContextStrategy.MINIMAL,
            priority=ContentPriority.DEPTH,
        )
        assert strategy is ContextStrategy.MINIMAL
        assert priority is ContentPriority.DEPTH

    def test_priority_follows_inferred_strategy(self):
        assert select_strategy("brainstorm ideas") == (
            ContextStrategy.EXPLORATORY,
            ContentPriority.BREADTH,
        )


class TestCategoryWeights:
    """Test category proportions."""

    def test_every_strategy_has_weights(self):
        assert set(STRATEGY_WEIGHTS) == set(ContextStrategy)

    def test_ancestors_largest_share_by_default(self):
        weights = category_weights(ContextStrategy.COMPREHENSIVE)
        assert weights.ancestors == max(
            weights.ancestors, weights.siblings, weights.references, weights.summaries
        )
        assert weights.summaries == min(
            weights.ancestors, weights.siblings, weights.references, weights.summaries
        )

    def test_custom_weights_override(self):
        custom = CategoryWeights(ancestors=1, siblings=0, references=0, summaries=0)
        assert category_weights(ContextStrategy.CREATIVE, custom) is custom

    def test_all_zero_weights_rejected(self):
        with pytest.raises(ValueError):
            CategoryWeights(ancestors=0, siblings=0, references=0, summaries=0)
