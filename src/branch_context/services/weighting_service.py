"""Node weighting engine: per-candidate scoring and ranking."""

import logging
import math
from collections.abc import Iterable
from datetime import datetime

from branch_context.models.context import (
    CandidateNode,
    ContentPriority,
    ContextCategory,
    ContextStrategy,
)
from branch_context.models.node import ConversationNode, NodeStatus
from branch_context.services.relevance import jaccard_similarity, relevance_score, tokenize

logger = logging.getLogger(__name__)

# Completeness of nodes that lack a finished response
STATUS_COMPLETENESS = {
    NodeStatus.STREAMING: 0.6,
    NodeStatus.PENDING: 0.3,
    NodeStatus.COMPLETED: 0.3,
    NodeStatus.FAILED: 0.1,
}

DIVERSITY_BONUS = 0.2
FOCUSED_SIBLING_FACTOR = 0.5
HIGH_SIGNAL = 0.6

COMPONENTS = ("relevance", "recency", "completeness", "structural")

PRIMARY_COMPONENT = {
    ContentPriority.RELEVANCE: "relevance",
    ContentPriority.RECENCY: "recency",
    ContentPriority.COMPLETENESS: "completeness",
    ContentPriority.DEPTH: "structural",
    ContentPriority.BREADTH: "structural",
}

REASON_LABELS = {
    "relevance": "high relevance",
    "recency": "recent",
    "completeness": "complete",
    "structural": "close",
}


def completeness_score(node: ConversationNode) -> float:
    """Score how complete a node's content is (0.0-1.0)."""
    if node.is_note:
        return 1.0
    if node.status is NodeStatus.COMPLETED and node.prompt and node.has_response:
        return 1.0
    return STATUS_COMPLETENESS[node.status]


def candidate_sort_key(candidate: CandidateNode) -> tuple:
    """Weight descending, then nearer, then older, then id."""
    return (
        -candidate.weight,
        candidate.distance,
        candidate.node.created_at,
        candidate.node.id,
    )


class NodeWeightingEngine:
    """Combine per-candidate signals into a single ranked weight."""

    def __init__(
        self,
        recency_half_life_hours: float = 24.0,
        reference_boost: float = 2.0,
        secondary_weight: float = 0.1,
    ) -> None:
        """Initialize weighting engine.

        Args:
            recency_half_life_hours: Age at which the recency score halves
            reference_boost: Multiplier for referenced nodes (reference-heavy)
            secondary_weight: Blend coefficient of each non-primary component
        """
        if reference_boost < 1.0:
            raise ValueError("reference_boost must be >= 1.0")
        if not 0.0 <= secondary_weight <= 0.25:
            raise ValueError("secondary_weight must be between 0.0 and 0.25")

        self.recency_half_life_hours = recency_half_life_hours
        self.reference_boost = reference_boost
        self.secondary_weight = secondary_weight

    def weigh(
        self,
        candidates: Iterable[CandidateNode],
        target: ConversationNode,
        prompt: str,
        strategy: ContextStrategy,
        priority: ContentPriority,
    ) -> list[CandidateNode]:
        """Score candidates and sort them by final weight.

        Args:
            candidates: Eligible candidates (annotated in place)
            target: Node the context is built for
            prompt: Active prompt
            strategy: Selection strategy
            priority: Dominant scoring dimension

        Returns:
            Candidates sorted by descending weight with deterministic ties
        """
        items = list(candidates)
        if not items:
            return []

        # Recency is measured against the snapshot, not the wall clock
        reference_time = max([target.created_at, *(c.node.created_at for c in items)])
        diversity = self._diversity_scores(items)

        for candidate in items:
            components = self._components(candidate, prompt, reference_time)
            candidate.components = components
            candidate.components["diversity"] = diversity.get(candidate.node_id, 1.0)

            if priority is ContentPriority.BREADTH:
                components["structural"] = 0.5 * components["structural"] + 0.5 * (
                    components["diversity"]
                )

            candidate.raw_weight = self._blend(components, PRIMARY_COMPONENT[priority])
            candidate.weight, candidate.reason = self._adjust(candidate, strategy)

        ranked = sorted(items, key=candidate_sort_key)
        for candidate in ranked:
            logger.debug(
                "Candidate %s (%s): weight=%.4f reason=%s",
                candidate.node.short_id,
                candidate.category.value,
                candidate.weight,
                candidate.reason,
            )
        return ranked

    def _components(
        self,
        candidate: CandidateNode,
        prompt: str,
        reference_time: datetime,
    ) -> dict[str, float]:
        node = candidate.node
        age_hours = max(0.0, (reference_time - node.created_at).total_seconds() / 3600)
        return {
            "relevance": relevance_score(node.content, prompt),
            "recency": math.exp(-math.log(2) * age_hours / self.recency_half_life_hours),
            "completeness": completeness_score(node),
            "structural": 1.0 / max(1, candidate.distance),
        }

    def _blend(self, components: dict[str, float], primary: str) -> float:
        secondary = self.secondary_weight
        others = sum(components[name] for name in COMPONENTS if name != primary)
        return components[primary] * (1 - 3 * secondary) + secondary * others

    def _adjust(self, candidate: CandidateNode, strategy: ContextStrategy) -> tuple[float, str]:
        """Apply strategy-specific adjustments and build the reason string."""
        weight = candidate.raw_weight
        labels = [
            REASON_LABELS[name]
            for name in COMPONENTS
            if candidate.components[name] >= HIGH_SIGNAL
        ]
        prefix: list[str] = []
        if candidate.is_parent:
            prefix.append("parent")
        if candidate.is_referenced:
            prefix.append("referenced")

        if strategy is ContextStrategy.MINIMAL:
            if not (candidate.is_parent or candidate.is_referenced):
                return 0.0, "suppressed (minimal)"
        elif strategy is ContextStrategy.REFERENCE_HEAVY:
            if candidate.is_referenced:
                weight *= self.reference_boost
                prefix[prefix.index("referenced")] = "referenced (boosted)"
        elif strategy in (ContextStrategy.EXPLORATORY, ContextStrategy.CREATIVE):
            if candidate.category is ContextCategory.SIBLING:
                weight += DIVERSITY_BONUS * candidate.components["diversity"]
                if candidate.components["diversity"] >= HIGH_SIGNAL:
                    labels.append("diverse")
        elif strategy is ContextStrategy.FOCUSED:
            if candidate.category is ContextCategory.SIBLING:
                weight *= FOCUSED_SIBLING_FACTOR

        parts = prefix + labels
        return weight, " + ".join(parts) if parts else "low signal"

    def _diversity_scores(self, candidates: list[CandidateNode]) -> dict[str, float]:
        """Topical diversity of each sibling against earlier siblings."""
        siblings = sorted(
            (c for c in candidates if c.category is ContextCategory.SIBLING),
            key=lambda c: (c.node.created_at, c.node.id),
        )
        scores: dict[str, float] = {}
        seen: list[set[str]] = []
        for candidate in siblings:
            tokens = tokenize(candidate.node.content)
            closest = max((jaccard_similarity(tokens, other) for other in seen), default=0.0)
            scores[candidate.node_id] = 1.0 - closest
            seen.append(tokens)
        return scores
