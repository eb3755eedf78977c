"""Explicit node reference extraction and resolution."""

import logging
import re
from collections.abc import Iterable

from branch_context.models.node import ConversationNode

logger = logging.getLogger(__name__)

MIN_FRAGMENT_LENGTH = 8

# @id / @node_id, #id and [[node:id]]
REFERENCE_PATTERNS = (
    re.compile(r"@(?:node_)?([0-9A-Za-z-]{%d,})" % MIN_FRAGMENT_LENGTH),
    re.compile(r"#([0-9A-Za-z-]{%d,})" % MIN_FRAGMENT_LENGTH),
    re.compile(r"\[\[node:([0-9A-Za-z-]+)\]\]"),
)


def extract_references(prompt: str) -> list[str]:
    """Extract referenced id fragments from a prompt.

    Args:
        prompt: Raw prompt text

    Returns:
        Deduplicated fragments in order of first appearance
    """
    if not prompt:
        return []

    found: list[tuple[int, str]] = []
    for pattern in REFERENCE_PATTERNS:
        for match in pattern.finditer(prompt):
            found.append((match.start(), match.group(1).strip("-")))

    fragments: list[str] = []
    seen: set[str] = set()
    for _, fragment in sorted(found):
        key = fragment.lower()
        if fragment and key not in seen:
            seen.add(key)
            fragments.append(fragment)
    return fragments


def merge_references(explicit: Iterable[str], extracted: Iterable[str]) -> list[str]:
    """Merge caller-supplied ids ahead of extracted fragments, deduplicated."""
    merged: list[str] = []
    seen: set[str] = set()
    for fragment in (*explicit, *extracted):
        key = fragment.lower()
        if fragment and key not in seen:
            seen.add(key)
            merged.append(fragment)
    return merged


def resolve_references(
    fragments: Iterable[str],
    nodes: Iterable[ConversationNode],
) -> list[ConversationNode]:
    """Resolve id fragments against known nodes by suffix match.

    An exact id match wins; otherwise the earliest-created node whose id ends
    with the fragment (case-insensitive) is used. Unmatched fragments are
    dropped.

    Args:
        fragments: Id fragments, in priority order
        nodes: Nodes the fragments may refer to

    Returns:
        Resolved nodes, deduplicated, in fragment order
    """
    known = sorted(nodes, key=lambda n: (n.created_at, n.id))
    by_id = {node.id.lower(): node for node in known}

    resolved: list[ConversationNode] = []
    resolved_ids: set[str] = set()
    for fragment in fragments:
        key = fragment.lower()
        node = by_id.get(key)
        if node is None:
            node = next((n for n in known if n.id.lower().endswith(key)), None)
        if node is None:
            logger.debug("Dropping unresolved reference fragment %s", fragment[-8:])
            continue
        if node.id not in resolved_ids:
            resolved_ids.add(node.id)
            resolved.append(node)
    return resolved
