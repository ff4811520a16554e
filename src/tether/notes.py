"""Operator annotation store: human notes pinned to a session or contact."""

import logging
from dataclasses import dataclass
from datetime import datetime

from .errors import InvalidNoteError
from .models import NoteCategory, NoteTarget, OperatorNote, Session
from .store import ConversationStore

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 5


@dataclass
class NoteAdded:
    """Result of creating a note.

    ``over_soft_cap`` means the target now holds more active notes than
    fit in context; the operator should consolidate. Creation is never
    blocked, the assembler keeps the highest-priority notes.
    """

    note: OperatorNote
    active_count: int
    soft_cap: int

    @property
    def over_soft_cap(self) -> bool:
        return self.active_count > self.soft_cap


class OperatorNotes:
    """CRUD for operator notes with soft caps per target."""

    def __init__(self, store: ConversationStore) -> None:
        self.store = store

    def organization_for(self, target: NoteTarget) -> str:
        if target.kind == "session":
            return self.store.get_session(target.id).organization
        if target.kind == "contact":
            return self.store.get_contact(target.id).organization
        raise InvalidNoteError(f"unknown note target kind {target.kind!r}")

    def add(
        self,
        target: NoteTarget,
        content: str,
        category: NoteCategory | str,
        priority: int = 3,
        author: str = "operator",
        *,
        now: datetime,
        soft_cap: int = 10,
    ) -> NoteAdded:
        """Create a note.

        Raises:
            InvalidNoteError: On empty content, unknown category or bad priority.
            SessionNotFoundError, ContactNotFoundError: If the target is missing.
        """
        content = (content or "").strip()
        if not content:
            raise InvalidNoteError("note content is empty")
        try:
            category = NoteCategory(category)
        except ValueError:
            valid = ", ".join(c.value for c in NoteCategory)
            raise InvalidNoteError(f"unknown category {category!r}, expected one of: {valid}") from None
        if not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise InvalidNoteError(f"priority must be an integer from {MIN_PRIORITY} to {MAX_PRIORITY}")

        organization = self.organization_for(target)
        note = self.store.insert_note(
            OperatorNote(
                id="",
                organization=organization,
                target=target,
                content=content,
                category=category,
                priority=priority,
                author=author,
                created_at=now,
            )
        )

        active = self.store.count_active_notes(target)
        if active > soft_cap:
            logger.warning(
                "%s %s has %d active notes (soft cap %d); consider consolidating",
                target.kind,
                target.id,
                active,
                soft_cap,
            )
        return NoteAdded(note=note, active_count=active, soft_cap=soft_cap)

    def archive(self, note_id: str, now: datetime) -> OperatorNote:
        """Archive a note. Archiving twice is harmless."""
        if not self.store.archive_note(note_id, now):
            logger.info("Note %s was already archived", note_id)
        return self.store.get_note(note_id)

    def list_notes(self, target: NoteTarget, include_archived: bool = False) -> list[OperatorNote]:
        return self.store.list_notes(target, include_archived=include_archived)

    def for_context(self, session: Session) -> tuple[list[OperatorNote], list[OperatorNote]]:
        """Active session-level and contact-level notes for a turn."""
        return (
            self.store.list_notes(NoteTarget.session(session.id)),
            self.store.list_notes(NoteTarget.contact(session.contact_id)),
        )
