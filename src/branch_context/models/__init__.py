"""Data models for branch-context."""

from branch_context.models.context import (
    AssembledContext,
    BuildRequest,
    CacheEntry,
    CacheStats,
    CandidateNode,
    CandidateWeight,
    CategoryTokens,
    CategoryWeights,
    ContentPriority,
    ContextBuildOptions,
    ContextCategory,
    ContextMessage,
    ContextMetadata,
    ContextStrategy,
    IncludedNodes,
)
from branch_context.models.node import (
    ConversationNode,
    NodeKind,
    NodeMetadata,
    NodeStatus,
)

__all__ = [
    # Node models
    "ConversationNode",
    "NodeKind",
    "NodeMetadata",
    "NodeStatus",
    # Context models
    "AssembledContext",
    "BuildRequest",
    "CacheEntry",
    "CacheStats",
    "CandidateNode",
    "CandidateWeight",
    "CategoryTokens",
    "CategoryWeights",
    "ContentPriority",
    "ContextBuildOptions",
    "ContextCategory",
    "ContextMessage",
    "ContextMetadata",
    "ContextStrategy",
    "IncludedNodes",
]
