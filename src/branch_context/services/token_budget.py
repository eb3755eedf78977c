"""Token budget allocation across context categories and message rendering."""

import logging
from dataclasses import dataclass, field

from branch_context.models.context import (
    CandidateNode,
    CategoryTokens,
    CategoryWeights,
    ContextCategory,
    ContextMessage,
    ContextStrategy,
    IncludedNodes,
)
from branch_context.models.node import ConversationNode
from branch_context.utils.summarization import extractive_summary_by_tokens
from branch_context.utils.token_counter import TokenCounter, truncate_to_token_limit

logger = logging.getLogger(__name__)

DIGEST_SLICE = 100

SUMMARY_HEADERS = {
    ContextStrategy.ANALYTICAL: "Related analysis context",
    ContextStrategy.EXPLORATORY: "Alternative approaches considered",
    ContextStrategy.REFERENCE_HEAVY: "Referenced conversations",
    ContextStrategy.CREATIVE: "Inspiring examples",
}
DEFAULT_SUMMARY_HEADER = "Previous context"

# Order in which receivers absorb donated budget
PRECEDENCE = (
    ContextCategory.ANCESTOR,
    ContextCategory.REFERENCE,
    ContextCategory.SIBLING,
    ContextCategory.SUMMARY,
)


def render_node(node: ConversationNode) -> list[ContextMessage]:
    """Render a node as role-tagged messages.

    Chat nodes become a user/assistant pair (the assistant half only when a
    response exists); notes become one system message. A root's system
    prompt leads.
    """
    messages: list[ContextMessage] = []
    if node.is_root and node.system_prompt:
        messages.append(ContextMessage(role="system", content=node.system_prompt))

    if node.is_note:
        title = f" ({node.metadata.note_title})" if node.metadata.note_title else ""
        messages.append(ContextMessage(role="system", content=f"Note{title}: {node.prompt}"))
        return messages

    if node.prompt:
        messages.append(ContextMessage(role="user", content=node.prompt))
    if node.has_response:
        messages.append(ContextMessage(role="assistant", content=node.response or ""))
    return messages


def digest_line(node: ConversationNode) -> str:
    """One-line digest of a node: ``[shortid] Q: ... | A: ...``."""
    question = " ".join(node.prompt.split())[:DIGEST_SLICE]
    if node.is_note:
        return f"[{node.short_id}] Note: {question}"
    answer = " ".join((node.response or "").split())[:DIGEST_SLICE]
    return f"[{node.short_id}] Q: {question} | A: {answer}"


@dataclass
class CategoryFill:
    """Outcome of filling one category."""

    category: ContextCategory
    budget: int
    used: int = 0
    selected: list[CandidateNode] = field(default_factory=list)
    messages: dict[str, list[ContextMessage]] = field(default_factory=dict)
    overflowed: bool = False
    truncated_ids: list[str] = field(default_factory=list)

    @property
    def unused(self) -> int:
        return max(0, self.budget - self.used)


def _placement(fills: dict[ContextCategory, CategoryFill]) -> dict[ContextCategory, tuple]:
    return {
        category: (fill.used, tuple(c.node_id for c in fill.selected))
        for category, fill in fills.items()
    }


@dataclass
class Allocation:
    """Final allocation of a build."""

    messages: list[ContextMessage]
    total_tokens: int
    included: IncludedNodes
    distribution: CategoryTokens
    truncated_node_ids: tuple[str, ...]
    adaptive_adjustments: int
    selected_count: int


class TokenBudgetAllocator:
    """Split a token budget across categories and fill them by weight."""

    def __init__(
        self,
        counter: TokenCounter,
        max_reallocation_rounds: int = 3,
        parent_min_tokens: int = 32,
        summary_line_tokens: int = 40,
    ) -> None:
        """Initialize allocator.

        Args:
            counter: Model-aware token counter
            max_reallocation_rounds: Cap on adaptive reallocation rounds
            parent_min_tokens: Floor kept for the immediate parent
            summary_line_tokens: Target size of one node digest
        """
        self.counter = counter
        self.max_reallocation_rounds = max_reallocation_rounds
        self.parent_min_tokens = parent_min_tokens
        self.summary_line_tokens = summary_line_tokens

    def count_messages(self, messages: list[ContextMessage], model: str) -> int:
        return sum(self.counter.count(m.content, model) for m in messages)

    def allocate(
        self,
        candidates: list[CandidateNode],
        weights: CategoryWeights,
        budget: int,
        model: str,
        strategy: ContextStrategy,
        adaptive: bool = True,
    ) -> Allocation:
        """Select candidates within budget and render them in context order.

        Args:
            candidates: Weighted candidates, sorted by descending weight
            weights: Category proportions
            budget: Tokens available for context (new user turn excluded)
            model: Model id for token counting
            strategy: Strategy of the build (selects the summary header)
            adaptive: Whether unused budget is reallocated

        Returns:
            Allocation with rendered messages and accounting
        """
        budget = max(0, budget)
        eligible = [c for c in candidates if c.weight > 0 or c.is_parent]
        by_category: dict[ContextCategory, list[CandidateNode]] = {
            category: [] for category in ContextCategory
        }
        for candidate in eligible:
            by_category[candidate.category].append(candidate)

        # The immediate parent is pinned first
        by_category[ContextCategory.ANCESTOR].sort(key=lambda c: not c.is_parent)

        rendered = {c.node_id: render_node(c.node) for c in eligible}
        costs = {
            node_id: self.count_messages(messages, model)
            for node_id, messages in rendered.items()
        }

        budgets = self._initial_budgets(weights, budget, by_category, costs)
        fills = self._fill_all(budgets, by_category, rendered, costs, model, strategy)

        adjustments = 0
        while adaptive and adjustments < self.max_reallocation_rounds:
            new_budgets = self._reallocate(fills, weights)
            if new_budgets is not None:
                fills = self._fill_all(new_budgets, by_category, rendered, costs, model, strategy)
            else:
                spent = self._spend_spare(
                    budget, fills, by_category, rendered, costs, model, strategy
                )
                if spent is None:
                    break
                fills = spent
            adjustments += 1
            logger.debug(
                "Adaptive reallocation round %d: %s",
                adjustments,
                {c.value: fills[c].budget for c in PRECEDENCE},
            )

        return self._assemble(fills, adjustments, model)

    def _initial_budgets(
        self,
        weights: CategoryWeights,
        budget: int,
        by_category: dict[ContextCategory, list[CandidateNode]],
        costs: dict[str, int],
    ) -> dict[ContextCategory, int]:
        """Ancestors get their full cost when the whole chain fits; others split the rest.

        A chain that cannot fit keeps its proportional share, so the other
        categories are not starved.
        """
        ancestor_cost = sum(costs[c.node_id] for c in by_category[ContextCategory.ANCESTOR])
        ancestor_budget = int(budget * weights.share(ContextCategory.ANCESTOR))
        if ancestor_cost <= budget:
            ancestor_budget = max(ancestor_budget, ancestor_cost)
        remainder = budget - ancestor_budget

        others = [c for c in PRECEDENCE if c is not ContextCategory.ANCESTOR]
        other_total = sum(weights.share(c) for c in others)
        budgets = {ContextCategory.ANCESTOR: ancestor_budget}
        for category in others:
            share = weights.share(category) / other_total if other_total > 0 else 0.0
            budgets[category] = int(remainder * share)
        # Rounding leftovers stay with the ancestors
        budgets[ContextCategory.ANCESTOR] += budget - sum(budgets.values())
        return budgets

    def _spend_spare(
        self,
        budget: int,
        fills: dict[ContextCategory, CategoryFill],
        by_category: dict[ContextCategory, list[CandidateNode]],
        rendered: dict[str, list[ContextMessage]],
        costs: dict[str, int],
        model: str,
        strategy: ContextStrategy,
    ) -> dict[ContextCategory, CategoryFill] | None:
        """Offer budget left idle in truncated categories to every category in precedence order.

        Returns:
            New fills, or None when nothing more could be placed
        """
        spare = budget - sum(fill.used for fill in fills.values())
        if spare <= 0 or not any(fill.overflowed for fill in fills.values()):
            return None

        budgets = {c: fills[c].used for c in PRECEDENCE}
        refilled = self._fill_all(
            budgets, by_category, rendered, costs, model, strategy, spare=spare
        )
        if _placement(refilled) == _placement(fills):
            return None
        return refilled

    def _reallocate(
        self,
        fills: dict[ContextCategory, CategoryFill],
        weights: CategoryWeights,
    ) -> dict[ContextCategory, int] | None:
        """Move unused budget from donors to truncated categories.

        Returns:
            New budgets, or None when no donor/receiver pair remains
        """
        donors = [c for c in PRECEDENCE if not fills[c].overflowed and fills[c].unused > 0]
        receivers = [c for c in PRECEDENCE if fills[c].overflowed]
        if not donors or not receivers:
            return None

        budgets = {c: fills[c].budget for c in PRECEDENCE}
        pool = 0
        for category in donors:
            pool += fills[category].unused
            budgets[category] = fills[category].used

        receiver_total = sum(weights.share(c) for c in receivers)
        given = 0
        for category in receivers:
            if receiver_total > 0:
                amount = int(pool * weights.share(category) / receiver_total)
            else:
                amount = pool // len(receivers)
            budgets[category] += amount
            given += amount
        # Rounding leftovers go to the highest-precedence receiver
        budgets[receivers[0]] += pool - given
        return budgets

    def _fill_all(
        self,
        budgets: dict[ContextCategory, int],
        by_category: dict[ContextCategory, list[CandidateNode]],
        rendered: dict[str, list[ContextMessage]],
        costs: dict[str, int],
        model: str,
        strategy: ContextStrategy,
        spare: int = 0,
    ) -> dict[ContextCategory, CategoryFill]:
        """Fill every category; ``spare`` is offered to each in turn on top of its budget."""
        fills: dict[ContextCategory, CategoryFill] = {}
        leftovers: list[CandidateNode] = []
        for category in (
            ContextCategory.ANCESTOR,
            ContextCategory.REFERENCE,
            ContextCategory.SIBLING,
        ):
            fill = self._fill_category(
                category, budgets[category] + spare, by_category[category], rendered, costs, model
            )
            fills[category] = fill
            selected_ids = {c.node_id for c in fill.selected}
            leftovers.extend(c for c in by_category[category] if c.node_id not in selected_ids)
            if spare:
                spare = fill.unused
                fill.budget = fill.used

        summary = self._fill_summary(
            budgets[ContextCategory.SUMMARY] + spare, leftovers, model, strategy
        )
        fills[ContextCategory.SUMMARY] = summary
        return fills

    def _fill_category(
        self,
        category: ContextCategory,
        budget: int,
        items: list[CandidateNode],
        rendered: dict[str, list[ContextMessage]],
        costs: dict[str, int],
        model: str,
    ) -> CategoryFill:
        """Greedy fill in weight order, stopping at the first item that does not fit."""
        fill = CategoryFill(category=category, budget=budget)
        for candidate in items:
            cost = costs[candidate.node_id]
            if fill.used + cost <= budget:
                fill.selected.append(candidate)
                fill.messages[candidate.node_id] = rendered[candidate.node_id]
                fill.used += cost
                continue

            if candidate.is_parent and not fill.selected:
                target = max(budget, min(self.parent_min_tokens, cost))
                messages = self.truncate_messages(rendered[candidate.node_id], target, model)
                fill.selected.append(candidate)
                fill.messages[candidate.node_id] = messages
                fill.used += self.count_messages(messages, model)
                fill.truncated_ids.append(candidate.node_id)
                logger.debug(
                    "Truncated parent %s to %d tokens", candidate.node.short_id, fill.used
                )
            fill.overflowed = True
            break
        return fill

    def truncate_messages(
        self, messages: list[ContextMessage], limit: int, model: str
    ) -> list[ContextMessage]:
        """Shrink messages from the end (response first, then prompt) to fit ``limit``."""
        result = list(messages)
        while result and self.count_messages(result, model) > limit:
            last = result[-1]
            room = limit - self.count_messages(result[:-1], model)
            if room > 0:
                text, _, _ = truncate_to_token_limit(last.content, room, self.counter, model)
                if text:
                    result[-1] = ContextMessage(role=last.role, content=text)
                    break
            if len(result) == 1:
                # Never drop the last remaining message of the parent
                text, _, _ = truncate_to_token_limit(
                    last.content, max(1, limit), self.counter, model
                )
                result[-1] = ContextMessage(role=last.role, content=text or last.content[:1])
                break
            result.pop()
        return result

    def _fill_summary(
        self,
        budget: int,
        leftovers: list[CandidateNode],
        model: str,
        strategy: ContextStrategy,
    ) -> CategoryFill:
        """Digest overflowed candidates into one system message."""
        fill = CategoryFill(category=ContextCategory.SUMMARY, budget=budget)
        if not leftovers:
            return fill

        header = f"{SUMMARY_HEADERS.get(strategy, DEFAULT_SUMMARY_HEADER)}:"
        lines: list[str] = []
        ordered = sorted(
            leftovers,
            key=lambda c: (-c.weight, c.distance, c.node.created_at, c.node.id),
        )
        for candidate in ordered:
            digest, _, _ = extractive_summary_by_tokens(
                digest_line(candidate.node), self.summary_line_tokens, self.counter, model
            )
            if not digest:
                continue
            content = "\n".join([header, *lines, f"- {digest}"])
            tokens = self.counter.count(content, model)
            if tokens > budget:
                fill.overflowed = True
                break
            lines.append(f"- {digest}")
            fill.selected.append(candidate)
            fill.used = tokens

        if fill.selected:
            content = "\n".join([header, *lines])
            fill.messages["summary"] = [ContextMessage(role="system", content=content)]
        return fill

    def _assemble(
        self,
        fills: dict[ContextCategory, CategoryFill],
        adjustments: int,
        model: str,
    ) -> Allocation:
        """Order messages: ancestors oldest first, references, siblings, summary."""
        ancestors = sorted(fills[ContextCategory.ANCESTOR].selected, key=lambda c: c.node.depth)
        references = sorted(
            fills[ContextCategory.REFERENCE].selected,
            key=lambda c: (c.node.created_at, c.node.id),
        )
        siblings = sorted(
            fills[ContextCategory.SIBLING].selected,
            key=lambda c: (c.node.depth, c.node.created_at, c.node.id),
        )

        messages: list[ContextMessage] = []
        for category, ordered in (
            (ContextCategory.ANCESTOR, ancestors),
            (ContextCategory.REFERENCE, references),
            (ContextCategory.SIBLING, siblings),
        ):
            for candidate in ordered:
                messages.extend(fills[category].messages[candidate.node_id])
        messages.extend(fills[ContextCategory.SUMMARY].messages.get("summary", []))

        summary = fills[ContextCategory.SUMMARY]
        truncated = [node_id for fill in fills.values() for node_id in fill.truncated_ids]
        return Allocation(
            messages=messages,
            total_tokens=self.count_messages(messages, model),
            included=IncludedNodes(
                ancestors=tuple(c.node_id for c in ancestors),
                siblings=tuple(c.node_id for c in siblings),
                references=tuple(c.node_id for c in references),
                summaries=tuple(c.node_id for c in summary.selected),
            ),
            distribution=CategoryTokens(
                ancestors=fills[ContextCategory.ANCESTOR].used,
                siblings=fills[ContextCategory.SIBLING].used,
                references=fills[ContextCategory.REFERENCE].used,
                summaries=summary.used,
            ),
            truncated_node_ids=tuple(truncated),
            adaptive_adjustments=adjustments,
            selected_count=len(ancestors) + len(references) + len(siblings) + len(summary.selected),
        )
