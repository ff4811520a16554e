"""Context assembly: stored state to a token-bounded, ordered prompt.

Layers, in priority order:

1. system instruction (never truncated)
2. contact memory (fixed share)
3. operator notes (hard-capped by count, never compressed)
4. session rolling summary (fixed share)
5. reactivation briefing (fixed share, only on reactivation)
6. recent messages verbatim (whatever budget remains, oldest dropped first)
7. the new inbound message (never truncated)

History is always the first thing sacrificed. Layers 1, 3 and 7 are
reserved before anything else; if they alone overflow the budget the
turn fails with ``ContextTooLargeError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .config import PolicyConfig
from .models import Message, OperatorNote
from .tokens import BLOCK_OVERHEAD, TokenBudget, block_tokens, truncate_to_tokens

LAYER_SYSTEM = "system"
LAYER_MEMORY = "contact_memory"
LAYER_NOTES = "operator_notes"
LAYER_SUMMARY = "summary"
LAYER_BRIEFING = "reactivation"
LAYER_HISTORY = "history"
LAYER_INBOUND = "inbound"


@dataclass(frozen=True)
class ContextBlock:
    """One role-tagged block of assembled context."""

    role: str
    layer: str
    content: str
    tokens: int

    def for_llm(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class AssembledContext:
    """Blocks handed to the model plus bookkeeping about what was left out."""

    blocks: list[ContextBlock]
    max_tokens: int
    dropped_messages: int = 0
    dropped_notes: int = 0
    truncated_layers: list[str] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(block.tokens for block in self.blocks)

    @property
    def layers(self) -> list[str]:
        seen: list[str] = []
        for block in self.blocks:
            if block.layer not in seen:
                seen.append(block.layer)
        return seen


def to_messages(blocks: list[ContextBlock]) -> list[dict[str, str]]:
    """Convert blocks to the role-tagged dicts a chat completion API expects."""
    return [block.for_llm() for block in blocks]


def _format_value(value: Any) -> str:
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict) and "text" in item:
                status = item.get("status")
                parts.append(f"{item['text']} ({status})" if status else str(item["text"]))
            else:
                parts.append(str(item))
        return ", ".join(parts)
    if isinstance(value, dict):
        return "; ".join(f"{k}={_format_value(v)}" for k, v in value.items() if v not in (None, "", [], {}))
    return str(value)


def serialize_memory(memory: dict[str, Any]) -> str:
    """Compact, line-per-section rendering of contact memory."""
    lines = []
    for section, values in memory.items():
        if not values:
            continue
        rendered = _format_value(values)
        if rendered:
            lines.append(f"{section}: {rendered}")
    if not lines:
        return ""
    return "What we know about this contact:\n" + "\n".join(lines)


def cap_notes(notes: list[OperatorNote], limit: int) -> tuple[list[OperatorNote], int]:
    """Keep at most ``limit`` notes, dropping the lowest priority (then oldest) first.

    Returns:
        The kept notes in priority-then-recency order, and how many were dropped.
    """
    ordered = sorted(notes, key=lambda n: (n.priority, n.created_at), reverse=True)
    kept = ordered[: max(0, limit)]
    return kept, len(ordered) - len(kept)


def render_notes(session_notes: list[OperatorNote], contact_notes: list[OperatorNote]) -> str:
    if not session_notes and not contact_notes:
        return ""
    lines = ["Operator notes (follow these):"]
    if session_notes:
        lines.append("This conversation:")
        lines.extend(f"- {note.render()}" for note in session_notes)
    if contact_notes:
        lines.append("This contact:")
        lines.extend(f"- {note.render()}" for note in contact_notes)
    return "\n".join(lines)


class ContextAssembler:
    """Builds the per-turn prompt from stored state under a token budget."""

    def __init__(self, system_instruction: str) -> None:
        self.system_instruction = system_instruction

    def assemble(
        self,
        inbound: str,
        policy: PolicyConfig,
        *,
        memory: dict[str, Any] | None = None,
        session_notes: list[OperatorNote] | None = None,
        contact_notes: list[OperatorNote] | None = None,
        summary: str = "",
        briefing: str = "",
        history: list[Message] | None = None,
    ) -> AssembledContext:
        """Assemble context blocks for one turn.

        Args:
            inbound: The new inbound message text.
            policy: Budget, shares and caps for the organization.
            memory: Contact structured memory.
            session_notes: Active notes pinned to the session.
            contact_notes: Active notes pinned to the contact.
            summary: The session's rolling summary.
            briefing: Reactivation briefing, empty unless reactivating.
            history: Candidate verbatim messages, oldest first.

        Raises:
            ContextTooLargeError: If non-truncatable layers exceed the budget.
        """
        budget = TokenBudget(policy.max_context_tokens)
        result = AssembledContext(blocks=[], max_tokens=policy.max_context_tokens)

        # Non-truncatable layers first.
        system_block = ContextBlock(
            "system", LAYER_SYSTEM, self.system_instruction, block_tokens(self.system_instruction)
        )
        budget.reserve(LAYER_SYSTEM, system_block.tokens)

        kept_session, dropped_session = cap_notes(session_notes or [], policy.max_session_notes)
        kept_contact, dropped_contact = cap_notes(contact_notes or [], policy.max_contact_notes)
        result.dropped_notes = dropped_session + dropped_contact
        notes_text = render_notes(kept_session, kept_contact)
        notes_block = None
        if notes_text:
            notes_block = ContextBlock("system", LAYER_NOTES, notes_text, block_tokens(notes_text))
            budget.reserve(LAYER_NOTES, notes_block.tokens)

        inbound_block = ContextBlock("user", LAYER_INBOUND, inbound, block_tokens(inbound))
        budget.reserve(LAYER_INBOUND, inbound_block.tokens)

        # Fixed-share layers, clipped to their allocation.
        memory_block = self._shared_block(
            budget, LAYER_MEMORY, serialize_memory(memory or {}), policy.memory_share, result
        )
        summary_text = f"Summary of the earlier conversation:\n{summary}" if summary else ""
        summary_block = self._shared_block(
            budget, LAYER_SUMMARY, summary_text, policy.summary_share, result
        )
        briefing_block = self._shared_block(
            budget, LAYER_BRIEFING, briefing, policy.briefing_share, result
        )

        # Verbatim history takes what is left, newest first.
        window: list[ContextBlock] = []
        candidates = list(history or [])[-policy.window_max_messages:] if policy.window_max_messages > 0 else []
        result.dropped_messages = len(history or []) - len(candidates)
        for message in reversed(candidates):
            cost = block_tokens(message.content)
            if not budget.fits(cost):
                result.dropped_messages += len(candidates) - len(window)
                break
            budget.charge(LAYER_HISTORY, cost)
            window.append(ContextBlock(message.role, LAYER_HISTORY, message.content, cost))
        window.reverse()

        for block in (system_block, memory_block, notes_block, summary_block, briefing_block):
            if block is not None:
                result.blocks.append(block)
        result.blocks.extend(window)
        result.blocks.append(inbound_block)
        return result

    def _shared_block(
        self,
        budget: TokenBudget,
        layer: str,
        text: str,
        share: float,
        result: AssembledContext,
    ) -> ContextBlock | None:
        if not text:
            return None
        allowed = min(budget.allocation(share), budget.remaining) - BLOCK_OVERHEAD
        clipped = truncate_to_tokens(text, allowed)
        if not clipped:
            result.truncated_layers.append(layer)
            return None
        if clipped != text:
            result.truncated_layers.append(layer)
        block = ContextBlock("system", layer, clipped, block_tokens(clipped))
        budget.charge(layer, block.tokens)
        return block
