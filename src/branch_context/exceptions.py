"""Custom exceptions for branch-context."""


class ContextEngineError(Exception):
    """Base class for context engine errors."""

    pass


class NotFoundError(ContextEngineError):
    """Raised when a requested resource is not found."""

    pass


class NodeNotFoundError(NotFoundError):
    """Raised when the target conversation node does not exist."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id


class ValidationError(ContextEngineError):
    """Raised when validation fails."""

    pass


class StoreUnavailableError(ContextEngineError):
    """Raised when the node store cannot be read."""

    pass


class WeightingDegradedError(ContextEngineError):
    """Raised when scoring or allocation fails mid-build."""

    reason = "weighting_failed"


class ReferenceResolutionError(WeightingDegradedError):
    """Raised when explicit references cannot be resolved."""

    reason = "reference_resolution_failed"


class CacheUnavailableError(ContextEngineError):
    """Raised when the cache backend cannot be reached."""

    pass
