"""Pure merge of an extracted diff into contact memory.

Update policy by category:

- identity, preferences, business context: overwrite
- sentiment, timeline and other sales scalars: overwrite
- pain points, objections, product interests: append, tracking status
  raised -> addressed -> resolved

A tracked item never moves backwards unless the batch's contact
messages contain the evidence quoted for it.
"""

import copy
import re
from datetime import datetime
from typing import Any

from ..models import FactUpdate, ItemStatus, Message, Provenance, to_iso
from .extractor import FactDiff, TrackedChange

_WHITESPACE = re.compile(r"\s+")


def _key(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip().casefold()


def evidence_in_messages(evidence: str, messages: list[Message]) -> bool:
    """True if ``evidence`` appears in a contact-authored message."""
    needle = _key(evidence)
    if not needle:
        return False
    return any(needle in _key(m.content) for m in messages if m.role == "user")


def merge_fact_diff(
    memory: dict[str, Any],
    diff: FactDiff,
    provenance: Provenance,
    messages: list[Message],
    now: datetime,
) -> tuple[dict[str, Any], list[FactUpdate]]:
    """Apply ``diff`` to a copy of ``memory``.

    Args:
        memory: Current contact memory. Not modified.
        diff: Validated extractor output.
        provenance: Session and message range the diff came from.
        messages: The batch the diff was extracted from, used to verify
            evidence for status regressions.
        now: Timestamp recorded on tracked items.

    Returns:
        The new memory and the list of effective updates. Unchanged values
        produce no update.
    """
    merged = copy.deepcopy(memory)
    updates: list[FactUpdate] = []
    stamp = to_iso(now)

    for section, values in diff.fields.items():
        target = merged.setdefault(section, {})
        for name, value in values.items():
            old = target.get(name)
            if old == value:
                continue
            target[name] = value
            updates.append(FactUpdate(f"{section}.{name}", old, value, provenance))

    for list_name, changes in diff.tracked.items():
        items = merged.setdefault("sales_context", {}).setdefault(list_name, [])
        for change in changes:
            update = _merge_tracked(items, list_name, change, provenance, messages, stamp)
            if update is not None:
                updates.append(update)

    return merged, updates


def _merge_tracked(
    items: list[dict[str, Any]],
    list_name: str,
    change: TrackedChange,
    provenance: Provenance,
    messages: list[Message],
    stamp: str,
) -> FactUpdate | None:
    path = f"sales_context.{list_name}"
    existing = next((item for item in items if _key(item.get("text", "")) == _key(change.text)), None)

    if existing is None:
        item = {
            "text": change.text,
            "status": change.status.value,
            "first_seen": stamp,
            "updated_at": stamp,
            "source": provenance.to_dict(),
        }
        items.append(item)
        return FactUpdate(path, None, dict(item), provenance)

    try:
        current = ItemStatus(existing.get("status", ItemStatus.RAISED.value))
    except ValueError:
        current = ItemStatus.RAISED

    if change.status == current:
        return None
    if change.status.rank < current.rank and not evidence_in_messages(change.evidence, messages):
        # Regression without the contact saying it again.
        return None

    old = dict(existing)
    existing["status"] = change.status.value
    existing["updated_at"] = stamp
    existing["source"] = provenance.to_dict()
    return FactUpdate(path, old, dict(existing), provenance)


def record_interaction(
    memory: dict[str, Any],
    session_id: str,
    channel: str,
    provenance: Provenance,
    now: datetime,
) -> tuple[dict[str, Any], list[FactUpdate]]:
    """Update interaction history for a batch that produced other changes."""
    merged = copy.deepcopy(memory)
    history = merged.setdefault("interaction_history", {})
    updates: list[FactUpdate] = []

    channels = list(history.get("channels", []))
    if channel not in channels:
        updates.append(FactUpdate("interaction_history.channels", list(channels), channels + [channel], provenance))
        channels.append(channel)
        history["channels"] = channels

    if history.get("last_session_id") != session_id:
        updates.append(
            FactUpdate("interaction_history.last_session_id", history.get("last_session_id"), session_id, provenance)
        )
        history["last_session_id"] = session_id

    history["last_extracted_at"] = to_iso(now)
    return merged, updates
