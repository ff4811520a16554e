"""Tests for context assembly under a token budget."""

from datetime import timedelta

import pytest

from conftest import T0
from tether.config import PolicyConfig
from tether.context import (
    AssembledContext,
    LAYER_BRIEFING,
    LAYER_HISTORY,
    LAYER_INBOUND,
    LAYER_MEMORY,
    LAYER_NOTES,
    LAYER_SUMMARY,
    LAYER_SYSTEM,
    ContextAssembler,
    cap_notes,
    serialize_memory,
)
from tether.errors import ContextTooLargeError
from tether.models import Message, NoteCategory, NoteTarget, OperatorNote

def blocks_in(context: AssembledContext, layer: str) -> list:
    return [block for block in context.blocks if block.layer == layer]


SYSTEM = "You are a helpful sales assistant."

MEMORY = {
    "identity": {"name": "Dana Reyes", "company": "Acme"},
    "sales_context": {
        "budget": "$500/month",
        "objections": [{"text": "price too high", "status": "raised"}],
    },
}


def _history(count: int, length: int = 100) -> list[Message]:
    return [
        Message(
            id=f"msg_{i}",
            session_id="ss_1",
            seq=i,
            role="user" if i % 2 else "assistant",
            content=f"{i:03d} " + "x" * (length - 4),
            created_at=T0 + timedelta(minutes=i),
        )
        for i in range(1, count + 1)
    ]


def _notes(count: int, kind: str = "session") -> list[OperatorNote]:
    return [
        OperatorNote(
            id=f"note_{i}",
            organization="acme",
            target=NoteTarget(kind, "ss_1"),
            content=f"note {i}",
            category=NoteCategory.STRATEGY,
            priority=1 + i % 5,
            created_at=T0 + timedelta(minutes=i),
        )
        for i in range(count)
    ]


@pytest.fixture
def assembler() -> ContextAssembler:
    return ContextAssembler(SYSTEM)


class TestAssemble:
    def test_new_contact_gets_system_and_inbound_only(self, assembler: ContextAssembler):
        context = assembler.assemble("hi", PolicyConfig())

        assert context.layers == [LAYER_SYSTEM, LAYER_INBOUND]
        assert context.blocks[0].content == SYSTEM
        assert context.blocks[-1].content == "hi"
        assert context.blocks[-1].role == "user"

    def test_layer_order(self, assembler: ContextAssembler):
        context = assembler.assemble(
            "any update?",
            PolicyConfig(),
            memory=MEMORY,
            session_notes=_notes(2),
            contact_notes=_notes(1, kind="contact"),
            summary="People: Dana",
            briefing="Reactivation: the contact returned after 10 days of silence.",
            history=_history(4),
        )

        assert context.layers == [
            LAYER_SYSTEM,
            LAYER_MEMORY,
            LAYER_NOTES,
            LAYER_SUMMARY,
            LAYER_BRIEFING,
            LAYER_HISTORY,
            LAYER_INBOUND,
        ]
        assert [b.content[:3] for b in blocks_in(context, LAYER_HISTORY)] == ["001", "002", "003", "004"]

    @pytest.mark.parametrize("max_tokens", [120, 250, 600, 4000])
    @pytest.mark.parametrize("history_count", [0, 5, 40])
    @pytest.mark.parametrize("summary_length", [0, 300, 5000])
    def test_budget_never_exceeded(
        self,
        assembler: ContextAssembler,
        max_tokens: int,
        history_count: int,
        summary_length: int,
    ):
        policy = PolicyConfig(max_context_tokens=max_tokens)
        context = assembler.assemble(
            "what does the pro plan cost?",
            policy,
            memory=MEMORY,
            session_notes=_notes(3),
            summary="s" * summary_length,
            briefing="b" * 2000,
            history=_history(history_count, length=180),
        )

        assert context.total_tokens <= max_tokens
        assert context.blocks[0].layer == LAYER_SYSTEM
        assert context.blocks[-1].layer == LAYER_INBOUND

    def test_history_dropped_before_other_layers(self, assembler: ContextAssembler):
        policy = PolicyConfig(max_context_tokens=300, memory_share=0.2, summary_share=0.2)
        history = _history(20)
        context = assembler.assemble(
            "ok",
            policy,
            memory={"identity": {"name": "Dana"}},
            summary="People: Dana from Acme",
            history=history,
        )

        kept = blocks_in(context, LAYER_HISTORY)
        assert blocks_in(context, LAYER_MEMORY)
        assert blocks_in(context, LAYER_SUMMARY)
        assert 0 < len(kept) < policy.window_max_messages
        assert kept[-1].content == history[-1].content
        assert context.dropped_messages == len(history) - len(kept)
        assert context.total_tokens <= 300

    def test_window_capped_by_message_count(self, assembler: ContextAssembler):
        context = assembler.assemble("hi", PolicyConfig(window_max_messages=10), history=_history(25, length=20))

        kept = blocks_in(context, LAYER_HISTORY)
        assert len(kept) == 10
        assert kept[0].content.startswith("016")
        assert context.dropped_messages == 15

    def test_shared_layers_clipped_to_allocation(self, assembler: ContextAssembler):
        policy = PolicyConfig(max_context_tokens=1000, summary_share=0.1)
        context = assembler.assemble("hi", policy, summary="word " * 2000)

        summary_block = blocks_in(context, LAYER_SUMMARY)[0]
        assert summary_block.tokens <= 100
        assert LAYER_SUMMARY in context.truncated_layers

    def test_notes_are_verbatim(self, assembler: ContextAssembler):
        note = OperatorNote(
            id="note_1",
            organization="acme",
            target=NoteTarget.session("ss_1"),
            content="price-sensitive",
            category=NoteCategory.WARNING,
        )
        context = assembler.assemble("hi", PolicyConfig(), session_notes=[note])

        assert "[warning] price-sensitive" in blocks_in(context, LAYER_NOTES)[0].content

    def test_note_cap_keeps_highest_priority(self, assembler: ContextAssembler):
        notes = _notes(14)
        policy = PolicyConfig(max_session_notes=10)

        context = assembler.assemble("hi", policy, session_notes=notes)

        assert context.dropped_notes == 4
        lines = blocks_in(context, LAYER_NOTES)[0].content.splitlines()
        kept, _ = cap_notes(notes, 10)
        for note in notes:
            assert (f"- {note.render()}" in lines) == (note in kept)

    def test_non_truncatable_overflow_raises(self, assembler: ContextAssembler):
        with pytest.raises(ContextTooLargeError) as exc_info:
            assembler.assemble("x" * 2000, PolicyConfig(max_context_tokens=100))

        assert exc_info.value.max_tokens == 100
        assert exc_info.value.required_tokens > 100

    def test_oversized_notes_raise(self, assembler: ContextAssembler):
        notes = [
            OperatorNote(
                id=f"note_{i}",
                organization="acme",
                target=NoteTarget.contact("ct_1"),
                content="n" * 400,
                category=NoteCategory.CONTEXT,
            )
            for i in range(5)
        ]
        with pytest.raises(ContextTooLargeError):
            assembler.assemble("hi", PolicyConfig(max_context_tokens=200), contact_notes=notes)


def test_cap_notes_orders_by_priority_then_recency():
    notes = _notes(6)
    kept, dropped = cap_notes(notes, 3)

    assert dropped == 3
    assert [n.priority for n in kept] == sorted((n.priority for n in kept), reverse=True)
    assert kept[0].priority == 5


def test_serialize_memory():
    text = serialize_memory(MEMORY)

    assert text.startswith("What we know about this contact:")
    assert "name=Dana Reyes" in text
    assert "price too high (raised)" in text
    assert serialize_memory({}) == ""
