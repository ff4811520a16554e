"""Data models for contacts, sessions, messages and operator notes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SessionStatus(str, Enum):
    """Lifecycle states of a session."""

    ACTIVE = "active"
    DORMANT = "dormant"
    CLOSED = "closed"


class NoteCategory(str, Enum):
    """Categories an operator can file a note under."""

    STRATEGY = "strategy"
    RELATIONSHIP = "relationship"
    CONTEXT = "context"
    WARNING = "warning"


class NoteStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class ItemStatus(str, Enum):
    """Progress of a tracked sales item (pain point, objection, interest)."""

    RAISED = "raised"
    ADDRESSED = "addressed"
    RESOLVED = "resolved"

    @property
    def rank(self) -> int:
        return _ITEM_STATUS_RANK[self]


_ITEM_STATUS_RANK = {
    ItemStatus.RAISED: 0,
    ItemStatus.ADDRESSED: 1,
    ItemStatus.RESOLVED: 2,
}


@dataclass
class Contact:
    """Persistent cross-channel identity.

    Attributes:
        id: Contact id.
        organization: Owning organization.
        identifiers: Normalized channel identifiers owned by this contact.
        memory: Structured memory (identity, preferences, business and
            sales context, interaction history).
        archived: Archived contacts are kept, never deleted.
    """

    id: str
    organization: str
    identifiers: list[str] = field(default_factory=list)
    memory: dict[str, Any] = field(default_factory=dict)
    archived: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """Bounded conversational thread for one contact on one channel."""

    id: str
    organization: str
    contact_id: str
    channel: str
    status: SessionStatus = SessionStatus.ACTIVE
    summary: str = ""
    summary_through_seq: int = 0
    extracted_through_seq: int = 0
    message_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_message_at: datetime | None = None

    @property
    def unsummarized_count(self) -> int:
        return self.message_count - self.summary_through_seq

    @property
    def unextracted_count(self) -> int:
        return self.message_count - self.extracted_through_seq


@dataclass(frozen=True)
class Message:
    """One immutable turn of a session."""

    id: str
    session_id: str
    seq: int
    role: str
    content: str
    created_at: datetime
    tool_calls: list[dict[str, Any]] | None = None


@dataclass(frozen=True)
class NoteTarget:
    """What an operator note is pinned to."""

    kind: str
    id: str

    @classmethod
    def session(cls, session_id: str) -> NoteTarget:
        return cls(kind="session", id=session_id)

    @classmethod
    def contact(cls, contact_id: str) -> NoteTarget:
        return cls(kind="contact", id=contact_id)


@dataclass
class OperatorNote:
    """Human-authored annotation. Never generated or compressed automatically."""

    id: str
    organization: str
    target: NoteTarget
    content: str
    category: NoteCategory
    priority: int = 3
    status: NoteStatus = NoteStatus.ACTIVE
    author: str = "operator"
    created_at: datetime = field(default_factory=utcnow)
    archived_at: datetime | None = None

    def render(self) -> str:
        return f"[{self.category.value}] {self.content}"


@dataclass(frozen=True)
class Provenance:
    """Where an extracted fact came from."""

    session_id: str
    from_seq: int
    to_seq: int

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "from_seq": self.from_seq, "to_seq": self.to_seq}


@dataclass(frozen=True)
class FactUpdate:
    """A single effective change to contact memory."""

    path: str
    old: Any
    new: Any
    provenance: Provenance

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "old": self.old,
            "new": self.new,
            "provenance": self.provenance.to_dict(),
        }


@dataclass
class ExtractedFactBatch:
    """Output of one extraction pass: a diff applied to contact memory."""

    contact_id: str
    provenance: Provenance
    updates: list[FactUpdate] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.updates
