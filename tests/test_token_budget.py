"""Tests for token budget allocation and message rendering."""

import pytest

from branch_context.models.context import (
    CandidateNode,
    CategoryWeights,
    ContextCategory,
    ContextStrategy,
)
from branch_context.models.node import NodeMetadata
from branch_context.services.token_budget import (
    TokenBudgetAllocator,
    digest_line,
    render_node,
)


def _candidate(node, category, weight, distance=1, is_parent=False, is_referenced=False):
    return CandidateNode(
        node=node,
        category=category,
        distance=distance,
        is_parent=is_parent,
        is_referenced=is_referenced,
        raw_weight=min(weight, 1.0),
        weight=weight,
    )


@pytest.fixture
def allocator(word_counter) -> TokenBudgetAllocator:
    return TokenBudgetAllocator(
        word_counter, max_reallocation_rounds=3, parent_min_tokens=4, summary_line_tokens=12
    )


@pytest.fixture
def chain(node_factory):
    """root -> n1 -> n2 (parent of the target); 10 words per node."""
    root = node_factory("root-0001", prompt="one two three four five", response="a b c d e")
    n1 = node_factory("node-0002", root, prompt="six seven eight nine ten", response="f g h i j")
    n2 = node_factory("node-0003", n1, prompt="k l m n o", response="p q r s t", minutes=1)
    return root, n1, n2


def _ancestor_candidates(chain):
    root, n1, n2 = chain
    return [
        _candidate(n2, ContextCategory.ANCESTOR, 0.9, distance=1, is_parent=True),
        _candidate(n1, ContextCategory.ANCESTOR, 0.5, distance=2),
        _candidate(root, ContextCategory.ANCESTOR, 0.4, distance=3),
    ]


COMPREHENSIVE = CategoryWeights(ancestors=0.4, siblings=0.3, references=0.2, summaries=0.1)


class TestRenderNode:
    """Test rendering of nodes as messages."""

    def test_chat_pair(self, conversation_tree):
        messages = render_node(conversation_tree["a"])
        assert [m.role for m in messages] == ["user", "assistant"]

    def test_root_system_prompt_leads(self, conversation_tree):
        messages = render_node(conversation_tree["root"])
        assert messages[0].role == "system"
        assert messages[0].content == "You are a helpful planner."

    def test_pending_node_has_no_assistant(self, node_factory):
        node = node_factory("p", prompt="still thinking")
        assert [m.role for m in render_node(node)] == ["user"]

    def test_note(self, node_factory):
        root = node_factory("r", prompt="x")
        note = node_factory(
            "n",
            root,
            prompt="ship on friday",
            metadata=NodeMetadata.from_raw({"nodeType": "user_note", "noteTitle": "Deadline"}),
        )
        messages = render_node(note)
        assert len(messages) == 1
        assert messages[0].role == "system"
        assert messages[0].content == "Note (Deadline): ship on friday"

    def test_digest_line(self, conversation_tree):
        line = digest_line(conversation_tree["a"])
        assert line.startswith("[00000002] Q: what database")
        assert "| A: use postgres" in line


class TestAllocate:
    """Test budget split and greedy fill."""

    def test_everything_fits(self, allocator, chain):
        result = allocator.allocate(
            _ancestor_candidates(chain), COMPREHENSIVE, 100, "m", ContextStrategy.COMPREHENSIVE
        )
        root, n1, n2 = chain
        assert result.included.ancestors == (root.id, n1.id, n2.id)
        assert result.total_tokens == 30
        # Oldest ancestor first, as user/assistant pairs
        assert [m.content for m in result.messages][:2] == [
            "one two three four five",
            "a b c d e",
        ]

    def test_ancestors_take_precedence_over_references(self, allocator, chain, node_factory):
        # Ancestors need 30 tokens, the reference 20; only 40 are available
        root = chain[0]
        reference = node_factory(
            "ref-0009",
            root,
            prompt=" ".join(["r"] * 10),
            response=" ".join(["s"] * 10),
        )
        candidates = [
            *_ancestor_candidates(chain),
            _candidate(reference, ContextCategory.REFERENCE, 2.0, distance=3, is_referenced=True),
        ]
        weights = CategoryWeights(ancestors=0.3, siblings=0.1, references=0.5, summaries=0.1)
        result = allocator.allocate(candidates, weights, 40, "m", ContextStrategy.REFERENCE_HEAVY)

        assert len(result.included.ancestors) == 3
        assert result.included.references == ()
        assert result.total_tokens <= 40

    def test_budget_respected(self, allocator, chain):
        for budget in (0, 5, 12, 21, 29):
            result = allocator.allocate(
                _ancestor_candidates(chain), COMPREHENSIVE, budget, "m", ContextStrategy.FOCUSED
            )
            # Only the parent may exceed, and only up to its floor
            assert result.total_tokens <= max(budget, allocator.parent_min_tokens)
            assert chain[2].id in result.included.ancestors

    def test_parent_truncated_when_alone_exceeds_budget(self, allocator, chain):
        result = allocator.allocate(
            _ancestor_candidates(chain), COMPREHENSIVE, 7, "m", ContextStrategy.COMPREHENSIVE
        )
        parent = chain[2]
        assert result.included.ancestors == (parent.id,)
        assert result.truncated_node_ids == (parent.id,)
        assert result.total_tokens == 7
        # Response is cut before the prompt
        assert result.messages[0].content == "k l m n o"
        assert result.messages[1].content == "p q"

    def test_parent_kept_with_zero_budget(self, allocator, chain):
        result = allocator.allocate(
            _ancestor_candidates(chain), COMPREHENSIVE, 0, "m", ContextStrategy.COMPREHENSIVE
        )
        assert result.included.ancestors == (chain[2].id,)
        assert result.total_tokens == allocator.parent_min_tokens

    def test_zero_weight_candidates_suppressed(self, allocator, chain):
        candidates = _ancestor_candidates(chain)
        candidates[1].weight = 0.0
        candidates[2].weight = 0.0
        result = allocator.allocate(candidates, COMPREHENSIVE, 100, "m", ContextStrategy.MINIMAL)
        assert result.included.ancestors == (chain[2].id,)
        assert result.included.summaries == ()

    def test_adaptive_reallocation_moves_unused_budget(self, allocator, conversation_tree):
        tree = conversation_tree
        siblings = [
            _candidate(tree["sib1"], ContextCategory.SIBLING, 0.8, distance=2),
            _candidate(tree["sib2"], ContextCategory.SIBLING, 0.7, distance=3),
        ]
        weights = CategoryWeights(ancestors=0.0, siblings=0.1, references=0.8, summaries=0.1)

        fixed = allocator.allocate(
            siblings, weights, 30, "m", ContextStrategy.COMPREHENSIVE, adaptive=False
        )
        adaptive = allocator.allocate(
            siblings, weights, 30, "m", ContextStrategy.COMPREHENSIVE, adaptive=True
        )

        assert fixed.adaptive_adjustments == 0
        assert fixed.included.siblings == ()
        assert adaptive.adaptive_adjustments >= 1
        # Shallower branch first
        assert adaptive.included.siblings == (tree["sib2"].id, tree["sib1"].id)
        assert adaptive.total_tokens <= 30

    def test_reallocation_rounds_capped(self, word_counter, conversation_tree):
        allocator = TokenBudgetAllocator(word_counter, max_reallocation_rounds=1)
        tree = conversation_tree
        siblings = [
            _candidate(tree["sib1"], ContextCategory.SIBLING, 0.8, distance=2),
            _candidate(tree["sib2"], ContextCategory.SIBLING, 0.7, distance=3),
        ]
        weights = CategoryWeights(ancestors=0.0, siblings=0.1, references=0.8, summaries=0.1)
        result = allocator.allocate(siblings, weights, 30, "m", ContextStrategy.COMPREHENSIVE)
        assert result.adaptive_adjustments <= 1

    def test_overflow_summarized(self, word_counter, chain, node_factory):
        allocator = TokenBudgetAllocator(word_counter, summary_line_tokens=12)
        root = chain[0]
        long_ref = node_factory(
            "ref-abcdefgh",
            root,
            prompt=" ".join(["question"] * 30),
            response=" ".join(["answer"] * 30),
        )
        candidates = [
            *_ancestor_candidates(chain),
            _candidate(long_ref, ContextCategory.REFERENCE, 0.6, distance=2, is_referenced=True),
        ]
        weights = CategoryWeights(ancestors=0.4, siblings=0.0, references=0.2, summaries=0.4)
        result = allocator.allocate(
            candidates, weights, 60, "m", ContextStrategy.REFERENCE_HEAVY, adaptive=False
        )

        assert result.included.references == ()
        assert result.included.summaries == (long_ref.id,)
        summary = result.messages[-1]
        assert summary.role == "system"
        assert summary.content.startswith("Referenced conversations:")
        assert "[abcdefgh]" in summary.content
        assert result.total_tokens <= 60

    def test_overflowing_chain_leaves_room_for_reference(self, allocator, chain, node_factory):
        # Ancestors need 30 tokens but only 25 are available
        reference = node_factory(
            "ref-0009", chain[0], prompt="r1 r2 r3 r4 r5", response="s1 s2 s3 s4 s5"
        )
        candidates = [
            *_ancestor_candidates(chain),
            _candidate(reference, ContextCategory.REFERENCE, 2.0, distance=3, is_referenced=True),
        ]
        weights = CategoryWeights(ancestors=0.3, siblings=0.1, references=0.5, summaries=0.1)
        result = allocator.allocate(candidates, weights, 25, "m", ContextStrategy.REFERENCE_HEAVY)

        assert chain[2].id in result.included.ancestors
        assert result.included.references == (reference.id,)
        assert result.total_tokens <= 25

    def test_idle_budget_of_truncated_category_is_spent(self, word_counter, chain, node_factory):
        allocator = TokenBudgetAllocator(word_counter, summary_line_tokens=12)
        long_ref = node_factory(
            "ref-abcdefgh",
            chain[0],
            prompt=" ".join(["question"] * 30),
            response=" ".join(["answer"] * 30),
        )
        candidates = [
            _candidate(long_ref, ContextCategory.REFERENCE, 0.6, distance=2, is_referenced=True)
        ]
        weights = CategoryWeights(ancestors=0.0, siblings=0.0, references=0.9, summaries=0.1)

        fixed = allocator.allocate(
            candidates, weights, 40, "m", ContextStrategy.REFERENCE_HEAVY, adaptive=False
        )
        adaptive = allocator.allocate(
            candidates, weights, 40, "m", ContextStrategy.REFERENCE_HEAVY
        )

        assert fixed.included.summaries == ()
        # The reference cannot fit, but its idle budget carries the digest
        assert adaptive.included.references == ()
        assert adaptive.included.summaries == (long_ref.id,)
        assert adaptive.adaptive_adjustments >= 1
        assert adaptive.total_tokens <= 40

    def test_message_order(self, allocator, conversation_tree):
        tree = conversation_tree
        candidates = [
            _candidate(tree["b"], ContextCategory.ANCESTOR, 0.9, distance=1, is_parent=True),
            _candidate(tree["a"], ContextCategory.ANCESTOR, 0.5, distance=2),
            _candidate(tree["root"], ContextCategory.ANCESTOR, 0.4, distance=3),
            _candidate(tree["sib1"], ContextCategory.SIBLING, 0.9, distance=2),
            _candidate(tree["ref"], ContextCategory.REFERENCE, 0.3, distance=3),
        ]
        result = allocator.allocate(
            candidates, COMPREHENSIVE, 1000, "m", ContextStrategy.COMPREHENSIVE
        )
        contents = [m.content for m in result.messages]
        assert contents[0] == "You are a helpful planner."
        order = [
            contents.index(tree["root"].prompt),
            contents.index(tree["a"].prompt),
            contents.index(tree["b"].prompt),
            contents.index(tree["ref"].prompt),
            contents.index(tree["sib1"].prompt),
        ]
        assert order == sorted(order)
        assert result.selected_count == 5
