"""Conversation node models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SHORT_ID_LENGTH = 8


class NodeStatus(str, Enum):
    """Lifecycle status of a conversation node."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeKind(str, Enum):
    """Kind of content a node carries."""

    CHAT = "chat"
    NOTE = "note"


class NodeMetadata(BaseModel):
    """Typed view of the metadata the engine relies on."""

    model_config = ConfigDict(frozen=True)

    kind: NodeKind = NodeKind.CHAT
    note_title: str | None = None
    note_tags: tuple[str, ...] = ()

    @classmethod
    def from_raw(cls, raw: dict[str, Any] | None) -> "NodeMetadata":
        """Parse the store's free-form metadata map.

        Unknown keys are ignored. A ``nodeType`` of ``user_note`` marks the
        node as a note.
        """
        if not raw:
            return cls()

        kind = NodeKind.NOTE if raw.get("nodeType") == "user_note" else NodeKind.CHAT
        tags = raw.get("noteTags") or ()
        return cls(
            kind=kind,
            note_title=raw.get("noteTitle"),
            note_tags=tuple(str(tag) for tag in tags),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationNode(BaseModel):
    """One turn (prompt plus optional response) in a branching session.

    Owned by the node store; the engine only reads it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: str | None = None
    session_id: str
    prompt: str = ""
    response: str | None = None
    status: NodeStatus = NodeStatus.COMPLETED
    depth: int = Field(default=0, ge=0)
    prompt_tokens: int = Field(default=0, ge=0)
    response_tokens: int = Field(default=0, ge=0)
    system_prompt: str | None = None
    model: str | None = None
    metadata: NodeMetadata = Field(default_factory=NodeMetadata)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def short_id(self) -> str:
        """Shortened id used in prompt references."""
        return self.id[-SHORT_ID_LENGTH:]

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def is_note(self) -> bool:
        return self.metadata.kind is NodeKind.NOTE

    @property
    def has_response(self) -> bool:
        return bool(self.response and self.response.strip())

    @property
    def content(self) -> str:
        """Prompt and response joined, used for relevance scoring."""
        if self.response:
            return f"{self.prompt}\n{self.response}"
        return self.prompt
