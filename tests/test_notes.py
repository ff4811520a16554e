"""Tests for operator notes."""

from typing import get_type_hints

import pytest

from conftest import T0
from tether.errors import InvalidNoteError, SessionNotFoundError
from tether.models import NoteCategory, NoteStatus, NoteTarget, OperatorNote
from tether.notes import OperatorNotes
from tether.store import ConversationStore


@pytest.fixture
def notes(store: ConversationStore) -> OperatorNotes:
    return OperatorNotes(store)


@pytest.fixture
def session(store: ConversationStore):
    contact = store.create_contact("acme", "phone:+15551234567", "sms", T0)
    return store.create_session("acme", contact.id, "sms", T0)


class TestAdd:
    def test_add_to_session(self, notes: OperatorNotes, session):
        added = notes.add(NoteTarget.session(session.id), "price-sensitive", "warning", priority=5, now=T0)

        assert added.note.id.startswith("note_")
        assert added.note.organization == "acme"
        assert added.note.category == NoteCategory.WARNING
        assert added.note.render() == "[warning] price-sensitive"
        assert added.active_count == 1
        assert not added.over_soft_cap

    def test_content_is_stored_verbatim(self, notes: OperatorNotes, store: ConversationStore, session):
        text = "Do NOT offer the 20% discount; CFO said so on 3/1."
        added = notes.add(NoteTarget.contact(session.contact_id), text, NoteCategory.STRATEGY, now=T0)
        assert store.get_note(added.note.id).content == text

    @pytest.mark.parametrize(
        "content,category,priority",
        [
            ("", "warning", 3),
            ("   ", "warning", 3),
            ("ok", "gossip", 3),
            ("ok", "warning", 0),
            ("ok", "warning", 6),
        ],
    )
    def test_validation(self, notes: OperatorNotes, session, content, category, priority):
        with pytest.raises(InvalidNoteError):
            notes.add(NoteTarget.session(session.id), content, category, priority, now=T0)

    def test_unknown_target(self, notes: OperatorNotes):
        with pytest.raises(SessionNotFoundError):
            notes.add(NoteTarget.session("ss_missing"), "hello", "context", now=T0)

    def test_unknown_target_kind(self, notes: OperatorNotes):
        with pytest.raises(InvalidNoteError):
            notes.add(NoteTarget("team", "t1"), "hello", "context", now=T0)

    def test_soft_cap_never_blocks(self, notes: OperatorNotes, session):
        target = NoteTarget.session(session.id)
        for i in range(3):
            added = notes.add(target, f"note {i}", "context", now=T0, soft_cap=2)

        assert added.active_count == 3
        assert added.over_soft_cap
        assert len(notes.list_notes(target)) == 3


class TestArchive:
    def test_archive_hides_note(self, notes: OperatorNotes, session):
        target = NoteTarget.session(session.id)
        added = notes.add(target, "price-sensitive", "warning", now=T0)

        archived = notes.archive(added.note.id, T0)

        assert archived.status == NoteStatus.ARCHIVED
        assert archived.archived_at == T0
        assert notes.list_notes(target) == []
        assert notes.list_notes(target, include_archived=True)[0].content == "price-sensitive"

    def test_archive_twice_is_harmless(self, notes: OperatorNotes, session):
        added = notes.add(NoteTarget.session(session.id), "x", "context", now=T0)
        notes.archive(added.note.id, T0)
        assert notes.archive(added.note.id, T0).status == NoteStatus.ARCHIVED


def test_for_context_splits_targets(notes: OperatorNotes, session):
    notes.add(NoteTarget.session(session.id), "session note", "context", now=T0)
    notes.add(NoteTarget.contact(session.contact_id), "contact note", "relationship", now=T0)

    session_notes, contact_notes = notes.for_context(session)

    assert [n.content for n in session_notes] == ["session note"]
    assert [n.content for n in contact_notes] == ["contact note"]


def test_for_context_annotations_resolve():
    hints = get_type_hints(OperatorNotes.for_context)
    assert hints["return"] == tuple[list[OperatorNote], list[OperatorNote]]
