"""Fact extraction from conversations using LLM."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import ExtractionError
from ..llm import LanguageModel
from ..models import ItemStatus, Message
from ..summarizer import format_conversation

logger = logging.getLogger(__name__)

OVERWRITE_SECTIONS = ("identity", "preferences", "business_context")
SALES_SCALARS = ("sentiment", "timeline", "budget", "next_step", "stage")
TRACKED_LISTS = ("pain_points", "objections", "product_interests")

EXTRACTION_PROMPT = """Analyze the new conversation messages and report what changed about the contact.

You are given the contact's CURRENT memory. Report ONLY new or changed information.
Never repeat a value that is already in memory unchanged.

Return ONLY valid JSON:
{{
  "identity": {{"<field>": "<value>"}},
  "preferences": {{"<field>": "<value>"}},
  "business_context": {{"<field>": "<value>"}},
  "sales_context": {{"sentiment": "...", "timeline": "...", "budget": "...", "next_step": "..."}},
  "pain_points": [{{"text": "...", "status": "raised|addressed|resolved", "evidence": "<exact quote>"}}],
  "objections": [{{"text": "...", "status": "raised|addressed|resolved", "evidence": "<exact quote>"}}],
  "product_interests": [{{"text": "...", "status": "raised|addressed|resolved", "evidence": "<exact quote>"}}]
}}

Rules:
- Omit any section with nothing new. If nothing changed, return {{}}
- Use short snake_case field names (name, company, role, preferred_channel, ...)
- Reuse the exact "text" of an existing item when updating its status
- "evidence" is a verbatim quote from a Contact message supporting the item
- Do not record questions or guesses as facts

Current memory:
{memory}

New messages:
{conversation}
"""


@dataclass
class TrackedChange:
    """A proposed change to a tracked list item."""

    text: str
    status: ItemStatus = ItemStatus.RAISED
    evidence: str = ""


@dataclass
class FactDiff:
    """Validated extractor output."""

    fields: dict[str, dict[str, Any]] = field(default_factory=dict)
    tracked: dict[str, list[TrackedChange]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not any(self.fields.values()) and not any(self.tracked.values())


class FactExtractor:
    """Extracts a memory diff from conversation messages using an LLM."""

    def __init__(self, llm: LanguageModel) -> None:
        """Initialize the extractor.

        Args:
            llm: The language model used for extraction.
        """
        self.llm = llm

    async def extract(self, messages: list[Message], memory: dict[str, Any]) -> FactDiff:
        """Extract a diff against current memory from a batch of messages.

        Args:
            messages: The conversation messages to analyze.
            memory: The contact's current structured memory.

        Returns:
            The proposed diff (possibly empty).

        Raises:
            ExtractionError: If the model call fails or its output is unusable.
        """
        if not messages:
            return FactDiff()

        prompt = EXTRACTION_PROMPT.format(
            memory=json.dumps(memory, ensure_ascii=False, sort_keys=True) if memory else "{}",
            conversation=format_conversation(messages),
        )

        try:
            content = await self.llm.complete(prompt)
        except Exception as e:
            raise ExtractionError(f"model call failed: {e}") from e

        return self._parse_response(content)

    def _parse_response(self, content: str) -> FactDiff:
        """Parse LLM response into a diff.

        Raises:
            ExtractionError: On invalid JSON or structure.
        """
        json_str = content.strip()
        if json_str.startswith("```"):
            # Remove markdown code block
            lines = [line for line in json_str.split("\n") if not line.startswith("```")]
            json_str = "\n".join(lines)

        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"invalid JSON from extractor: {e}") from e

        if not isinstance(data, dict):
            raise ExtractionError("extractor response is not a JSON object")

        diff = FactDiff()

        for section in (*OVERWRITE_SECTIONS, "sales_context"):
            values = data.get(section)
            if values is None:
                continue
            if not isinstance(values, dict):
                raise ExtractionError(f"section {section!r} must be an object")
            cleaned = {
                str(key): value
                for key, value in values.items()
                if value not in (None, "") and not isinstance(value, (dict, list))
            }
            if section == "sales_context":
                cleaned = {k: v for k, v in cleaned.items() if k in SALES_SCALARS}
            if cleaned:
                diff.fields[section] = cleaned

        for name in TRACKED_LISTS:
            items = data.get(name)
            if items is None:
                continue
            if not isinstance(items, list):
                raise ExtractionError(f"{name!r} must be a list")
            changes = []
            for item in items:
                if not isinstance(item, dict) or not str(item.get("text", "")).strip():
                    logger.warning("Skipping invalid %s item: %s", name, item)
                    continue
                try:
                    status = ItemStatus(str(item.get("status", "raised")).lower())
                except ValueError:
                    logger.warning("Unknown status in %s item: %s", name, item)
                    status = ItemStatus.RAISED
                changes.append(
                    TrackedChange(
                        text=str(item["text"]).strip(),
                        status=status,
                        evidence=str(item.get("evidence") or "").strip(),
                    )
                )
            if changes:
                diff.tracked[name] = changes

        return diff
