"""Rolling session summaries: replace, never append."""

import logging
from dataclasses import dataclass
from datetime import datetime

from .errors import SummarizationError
from .llm import LanguageModel
from .models import Message, Session
from .store import ConversationStore
from .tokens import estimate_tokens, truncate_to_tokens

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM = "You maintain a running summary of a customer conversation for a sales and support agent."

SUMMARY_PROMPT = """Rewrite the summary below so it also covers the new messages.
The result REPLACES the old summary, so keep everything from it that still matters.

Always preserve:
- names and identifying details of people and companies
- products, plans and prices discussed
- objections and whether they were resolved
- explicit commitments and agreed next steps
- the contact's current sentiment

Return plain text only, at most {max_words} words, using exactly these lines:
People: ...
Products & pricing: ...
Objections: ...
Commitments: ...
Sentiment: ...

Current summary:
{summary}

New messages:
{conversation}
"""

SPEAKERS = {"user": "Contact", "assistant": "Agent"}


def format_conversation(messages: list[Message]) -> str:
    """Format messages into a readable transcript, skipping system and tool turns."""
    lines = []
    for msg in messages:
        speaker = SPEAKERS.get(msg.role)
        if speaker:
            lines.append(f"{speaker}: {msg.content}")
    return "\n".join(lines)


def summary_line(summary: str, label: str) -> str:
    """Return the content of a ``Label: ...`` line from a summary, or ''."""
    prefix = f"{label.lower()}:"
    for line in summary.splitlines():
        stripped = line.strip()
        if stripped.lower().startswith(prefix):
            return stripped[len(prefix):].strip()
    return ""


class Summarizer:
    """Produces a replacement summary from the prior one plus new messages."""

    def __init__(self, llm: LanguageModel, max_tokens: int = 400) -> None:
        self.llm = llm
        self.max_tokens = max_tokens

    async def summarize(self, prior_summary: str, messages: list[Message], max_tokens: int | None = None) -> str:
        """Return a new summary covering ``prior_summary`` and ``messages``.

        Raises:
            SummarizationError: If the model returns nothing usable.
        """
        limit = max_tokens or self.max_tokens
        prompt = SUMMARY_PROMPT.format(
            max_words=max(20, int(limit * 0.75)),
            summary=prior_summary or "(none yet)",
            conversation=format_conversation(messages) or "(no new messages)",
        )
        try:
            content = (await self.llm.complete(prompt, system=SUMMARY_SYSTEM)).strip()
        except Exception as e:
            raise SummarizationError(f"model call failed: {e}") from e
        if content.startswith("```"):
            content = content.strip("`").strip()
        if not content:
            raise SummarizationError("model returned an empty summary")

        if estimate_tokens(content) > limit:
            logger.info("Summary over %d tokens, clipping", limit)
            content = truncate_to_tokens(content, limit)
        return content


@dataclass
class SummaryPass:
    """Outcome of one summarization pass."""

    session_id: str
    replaced: bool
    through_seq: int
    messages_folded: int = 0
    summary: str = ""


class SummarizationEngine:
    """Folds unsummarized session messages into the rolling summary."""

    def __init__(self, store: ConversationStore, summarizer: Summarizer) -> None:
        self.store = store
        self.summarizer = summarizer

    def needs_pass(self, session: Session, every: int) -> bool:
        return session.unsummarized_count >= every

    async def run(
        self,
        session_id: str,
        now: datetime,
        max_tokens: int | None = None,
        through_seq: int | None = None,
    ) -> SummaryPass:
        """Summarize everything newer than the current summary boundary.

        ``through_seq`` limits the pass to messages up to that sequence number.

        A session with no new messages is left unchanged, so re-running a
        pass never duplicates summary content.
        """
        session = self.store.get_session(session_id)
        messages = self.store.get_messages(
            session.id,
            after_seq=session.summary_through_seq,
            before_seq=through_seq + 1 if through_seq is not None else None,
        )
        if not messages:
            return SummaryPass(session.id, replaced=False, through_seq=session.summary_through_seq)

        through_seq = messages[-1].seq
        summary = await self.summarizer.summarize(session.summary, messages, max_tokens)
        replaced = self.store.replace_summary(session.id, summary, through_seq, now)
        if replaced:
            logger.info(
                "Replaced summary of session %s through message %d (%d new)",
                session.id,
                through_seq,
                len(messages),
            )
        return SummaryPass(
            session.id,
            replaced=replaced,
            through_seq=through_seq,
            messages_folded=len(messages),
            summary=summary,
        )
