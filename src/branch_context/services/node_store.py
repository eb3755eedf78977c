"""Read-only node store interface and an in-process implementation."""

from abc import ABC, abstractmethod
from collections.abc import Iterable

from branch_context.models.node import ConversationNode


class NodeStore(ABC):
    """Abstract base class for conversation node stores.

    The engine only reads nodes; creation and updates belong to the caller,
    which must call ``ContextBuildingService.invalidate_session`` afterwards.
    """

    @abstractmethod
    async def get_node(self, node_id: str) -> ConversationNode | None:
        """Get a node by id.

        Args:
            node_id: Node id

        Returns:
            Node or None if not found
        """
        pass

    @abstractmethod
    async def get_children(self, node_id: str) -> list[ConversationNode]:
        """Get direct children of a node, oldest first.

        Args:
            node_id: Parent node id

        Returns:
            Child nodes
        """
        pass

    @abstractmethod
    async def get_ancestor_chain(self, node_id: str) -> list[ConversationNode]:
        """Get the path from the session root to the node (inclusive).

        Args:
            node_id: Node id

        Returns:
            Nodes in root-to-target order, empty if the node does not exist
        """
        pass

    @abstractmethod
    async def get_session_nodes(self, session_id: str) -> list[ConversationNode]:
        """Get every node of a session, oldest first.

        Args:
            session_id: Session id

        Returns:
            Session nodes
        """
        pass


def _creation_order(node: ConversationNode) -> tuple:
    return (node.created_at, node.id)


class InMemoryNodeStore(NodeStore):
    """Node store backed by a dict, for embedding and tests."""

    def __init__(self, nodes: Iterable[ConversationNode] = ()) -> None:
        self._nodes: dict[str, ConversationNode] = {}
        for node in nodes:
            self.put(node)

    def put(self, node: ConversationNode) -> None:
        """Insert or replace a node."""
        self._nodes[node.id] = node

    async def get_node(self, node_id: str) -> ConversationNode | None:
        return self._nodes.get(node_id)

    async def get_children(self, node_id: str) -> list[ConversationNode]:
        children = [n for n in self._nodes.values() if n.parent_id == node_id]
        return sorted(children, key=_creation_order)

    async def get_ancestor_chain(self, node_id: str) -> list[ConversationNode]:
        chain: list[ConversationNode] = []
        visited: set[str] = set()
        current = self._nodes.get(node_id)

        while current is not None and current.id not in visited:
            visited.add(current.id)
            chain.append(current)
            if current.parent_id is None:
                break
            current = self._nodes.get(current.parent_id)

        chain.reverse()
        return chain

    async def get_session_nodes(self, session_id: str) -> list[ConversationNode]:
        nodes = [n for n in self._nodes.values() if n.session_id == session_id]
        return sorted(nodes, key=_creation_order)
