"""Database repositories."""

from branch_context.db.repositories.node_repository import NodeRepository

__all__ = ["NodeRepository"]
