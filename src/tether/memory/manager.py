"""Memory manager: extraction passes and read access to contact memory."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..models import ExtractedFactBatch, Provenance
from ..session.locks import KeyedLocks
from ..store import ConversationStore
from .extractor import FactExtractor
from .merge import merge_fact_diff, record_interaction

logger = logging.getLogger(__name__)


@dataclass
class ExtractionPass:
    """Outcome of one extraction pass."""

    session_id: str
    through_seq: int
    batch: ExtractedFactBatch | None = None
    batch_id: str | None = None

    @property
    def applied(self) -> bool:
        return self.batch_id is not None


class MemoryManager:
    """Orchestrates contact memory: extraction, merging and storage.

    Extraction passes for the same contact are serialized so concurrent
    sessions (one per channel) never lose each other's updates.
    """

    def __init__(self, store: ConversationStore, extractor: FactExtractor) -> None:
        """Initialize the manager.

        Args:
            store: The ConversationStore for persistence.
            extractor: The FactExtractor used for passes.
        """
        self.store = store
        self.extractor = extractor
        self._contact_locks = KeyedLocks()

    def get_memory(self, contact_id: str) -> dict[str, Any]:
        """Return a copy of a contact's structured memory."""
        return copy.deepcopy(self.store.get_contact(contact_id).memory)

    def needs_pass(self, unextracted: int, every: int) -> bool:
        return unextracted >= every

    async def extract_session(
        self,
        session_id: str,
        now: datetime,
        through_seq: int | None = None,
    ) -> ExtractionPass:
        """Run one extraction pass over a session's unprocessed messages.

        ``through_seq`` limits the pass to messages up to that sequence number.

        Nothing is written unless the whole pass succeeds: the merge runs
        on a copy, and memory plus batch record are stored in one
        transaction.

        Raises:
            ExtractionError: If the extractor fails; memory is untouched.
        """
        session = self.store.get_session(session_id)
        async with self._contact_locks.hold(session.contact_id):
            # Re-read under the lock; another pass may have advanced it.
            session = self.store.get_session(session_id)
            messages = self.store.get_messages(
                session.id,
                after_seq=session.extracted_through_seq,
                before_seq=through_seq + 1 if through_seq is not None else None,
            )
            if not messages:
                return ExtractionPass(session.id, through_seq=session.extracted_through_seq)

            provenance = Provenance(session.id, messages[0].seq, messages[-1].seq)
            memory = self.store.get_contact(session.contact_id).memory
            diff = await self.extractor.extract(messages, memory)

            merged, updates = merge_fact_diff(memory, diff, provenance, messages, now)
            batch = ExtractedFactBatch(
                contact_id=session.contact_id,
                provenance=provenance,
                updates=updates,
                created_at=now,
            )

            batch_id = None
            if not batch.is_empty:
                merged, history_updates = record_interaction(merged, session.id, session.channel, provenance, now)
                batch.updates.extend(history_updates)
                batch_id = self.store.apply_fact_batch(batch, merged)
                logger.info(
                    "Merged %d fact updates into contact %s from session %s",
                    len(batch.updates),
                    session.contact_id,
                    session.id,
                )
            else:
                self.store.mark_extracted(session.id, provenance.to_seq)
            return ExtractionPass(session.id, provenance.to_seq, batch=batch, batch_id=batch_id)
