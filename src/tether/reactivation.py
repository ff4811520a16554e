"""Reactivation detection and briefing for contacts returning after a long gap."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .session.resolver import elapsed_days
from .summarizer import summary_line


@dataclass(frozen=True)
class ReactivationSignal:
    is_reactivation: bool
    elapsed_days: float = 0.0

    @property
    def whole_days(self) -> int:
        return int(self.elapsed_days)


def detect_reactivation(
    last_message_at: datetime | None,
    now: datetime,
    threshold_days: float = 7.0,
) -> ReactivationSignal:
    """Flag a turn as a reactivation when the gap exceeds ``threshold_days``."""
    gap = elapsed_days(last_message_at, now)
    return ReactivationSignal(is_reactivation=last_message_at is not None and gap > threshold_days, elapsed_days=gap)


def _first_sentence(text: str, limit: int = 200) -> str:
    text = " ".join(text.split())
    for stop in (". ", "; "):
        idx = text.find(stop)
        if 0 < idx < limit:
            return text[: idx + 1].rstrip(";")
    return text[:limit]


def build_briefing(signal: ReactivationSignal, summary: str, memory: dict[str, Any]) -> str:
    """Synthesize a fresh briefing from the session summary and contact memory.

    The briefing is regenerated on every reactivation turn and never stored.
    """
    if not signal.is_reactivation:
        return ""

    days = signal.whole_days
    lines = [
        f"Reactivation: the contact returned after {days} day{'s' if days != 1 else ''} of silence.",
    ]

    name = (memory.get("identity") or {}).get("name")
    if name:
        lines.append(f"Contact: {name}.")

    sales = memory.get("sales_context") or {}

    topic = summary_line(summary, "Products & pricing") or _first_sentence(summary)
    if topic:
        lines.append(f"Last discussed: {topic}")

    next_step = sales.get("next_step") or summary_line(summary, "Commitments")
    if next_step:
        lines.append(f"Agreed next step was: {next_step}")

    open_objections = [
        item["text"]
        for item in sales.get("objections", [])
        if isinstance(item, dict) and item.get("status") != "resolved"
    ]
    if open_objections:
        lines.append(f"Open objections: {', '.join(open_objections)}")

    lines.append("Acknowledge the gap naturally and pick up where things left off.")
    return "\n".join(lines)
