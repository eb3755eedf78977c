"""Context building models."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from branch_context.models.node import ConversationNode


class ContextStrategy(str, Enum):
    """Named policy controlling which prior nodes are favored."""

    COMPREHENSIVE = "comprehensive"
    FOCUSED = "focused"
    EXPLORATORY = "exploratory"
    REFERENCE_HEAVY = "reference-heavy"
    MINIMAL = "minimal"
    ANALYTICAL = "analytical"
    CREATIVE = "creative"


class ContentPriority(str, Enum):
    """Dominant scoring dimension of a build."""

    RELEVANCE = "relevance"
    RECENCY = "recency"
    COMPLETENESS = "completeness"
    DEPTH = "depth"
    BREADTH = "breadth"


class ContextCategory(str, Enum):
    """Content category a candidate is budgeted under."""

    ANCESTOR = "ancestor"
    SIBLING = "sibling"
    REFERENCE = "reference"
    SUMMARY = "summary"


Role = Literal["system", "user", "assistant"]


class CategoryWeights(BaseModel):
    """Relative share of the token budget per category."""

    model_config = ConfigDict(frozen=True)

    ancestors: float = Field(ge=0.0)
    siblings: float = Field(ge=0.0)
    references: float = Field(ge=0.0)
    summaries: float = Field(ge=0.0)

    @model_validator(mode="after")
    def validate_total(self) -> Self:
        """Reject an all-zero split."""
        if self.total() <= 0:
            raise ValueError("At least one category weight must be positive")
        return self

    def total(self) -> float:
        return self.ancestors + self.siblings + self.references + self.summaries

    def share(self, category: ContextCategory) -> float:
        """Normalized share of a category (0.0-1.0)."""
        value = {
            ContextCategory.ANCESTOR: self.ancestors,
            ContextCategory.SIBLING: self.siblings,
            ContextCategory.REFERENCE: self.references,
            ContextCategory.SUMMARY: self.summaries,
        }[category]
        return value / self.total()


class ContextBuildOptions(BaseModel):
    """Caller-supplied options for a single build."""

    model_config = ConfigDict(frozen=True)

    strategy: ContextStrategy | None = None
    priority: ContentPriority | None = None
    max_tokens: int | None = Field(default=None, ge=1, le=200_000)
    include_siblings: bool = False
    include_references: tuple[str, ...] = ()
    model: str | None = None
    use_cache: bool = True
    custom_weights: CategoryWeights | None = None
    adaptive_tokens: bool = True

    def with_defaults(self, max_tokens: int, model: str) -> "ContextBuildOptions":
        """Fill unset budget and model so equal requests fingerprint equally."""
        return self.model_copy(
            update={
                "max_tokens": self.max_tokens or max_tokens,
                "model": self.model or model,
            }
        )

    def serialize(self) -> str:
        """Deterministic serialization used in cache keys."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))


class BuildRequest(BaseModel):
    """One entry of a batch or warm-up request."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    prompt: str
    options: ContextBuildOptions | None = None


@dataclass
class CandidateNode:
    """A node considered for inclusion in a single build."""

    node: ConversationNode
    category: ContextCategory
    distance: int
    is_parent: bool = False
    is_referenced: bool = False
    raw_weight: float = 0.0
    weight: float = 0.0
    reason: str = ""
    components: dict[str, float] = field(default_factory=dict)

    @property
    def node_id(self) -> str:
        return self.node.id


class ContextMessage(BaseModel):
    """Role-tagged message handed to the completion client."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class IncludedNodes(BaseModel):
    """Ids of included nodes per category."""

    model_config = ConfigDict(frozen=True)

    ancestors: tuple[str, ...] = ()
    siblings: tuple[str, ...] = ()
    references: tuple[str, ...] = ()
    summaries: tuple[str, ...] = ()

    def all_ids(self) -> tuple[str, ...]:
        return self.ancestors + self.references + self.siblings + self.summaries


class CategoryTokens(BaseModel):
    """Tokens consumed per category."""

    model_config = ConfigDict(frozen=True)

    ancestors: int = 0
    siblings: int = 0
    references: int = 0
    summaries: int = 0


class CandidateWeight(BaseModel):
    """Diagnostic record of one weighted candidate."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    category: ContextCategory
    weight: float
    reason: str


class ContextMetadata(BaseModel):
    """Build diagnostics returned with an assembled context."""

    model_config = ConfigDict(frozen=True)

    strategy: ContextStrategy
    priority: ContentPriority
    model: str
    max_tokens: int
    total_tokens: int
    included: IncludedNodes = Field(default_factory=IncludedNodes)
    token_distribution: CategoryTokens = Field(default_factory=CategoryTokens)
    truncated_node_ids: tuple[str, ...] = ()
    candidate_count: int = 0
    selected_count: int = 0
    adaptive_adjustments: int = 0
    weights: tuple[CandidateWeight, ...] = ()
    degraded: bool = False
    degradation_reason: str | None = None
    cache_hit: bool = False
    build_latency_ms: float = 0.0


class AssembledContext(BaseModel):
    """Ordered message list plus build metadata. Never mutated after return."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[ContextMessage, ...]
    metadata: ContextMetadata

    def to_messages(self) -> list[dict[str, str]]:
        """Plain dicts in the shape chat completion clients accept."""
        return [{"role": m.role, "content": m.content} for m in self.messages]

    def with_instrumentation(self, cache_hit: bool, build_latency_ms: float) -> "AssembledContext":
        """Copy with cache/latency fields replaced."""
        metadata = self.metadata.model_copy(
            update={"cache_hit": cache_hit, "build_latency_ms": build_latency_ms}
        )
        return self.model_copy(update={"metadata": metadata})


@dataclass
class CacheEntry:
    """Cache entry with metadata."""

    context: AssembledContext
    generation: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime | None = None
    hit_count: int = 0
    last_accessed: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) > self.expires_at


@dataclass
class CacheStats:
    """Cache statistics."""

    total_entries: int | None
    hit_count: int
    miss_count: int
    hit_rate: float
    error_count: int
    average_latency_ms: float
    compression_ratio: float | None
    coalesced_count: int = 0
    in_flight: int = 0
