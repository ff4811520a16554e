"""Conversation engine: the public surface of the memory system.

Per turn: resolve identity and session, record the inbound message,
assemble bounded context, call the model, record the reply. Summaries
and fact extraction run afterwards as background tasks and only affect
later turns.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from groq import AsyncGroq

from .background import BackgroundTasks
from .config import EngineConfig
from .context import ContextAssembler, ContextBlock, to_messages
from .errors import ContextTooLargeError
from .identity import IdentityResolution, IdentityResolver
from .llm import GroqLanguageModel, LanguageModel, ModelReply
from .logging import JSONLLogger, get_logger
from .memory import FactExtractor, MemoryManager
from .models import Contact, Message, NoteCategory, NoteTarget, OperatorNote, Session, utcnow
from .notes import OperatorNotes
from .reactivation import build_briefing, detect_reactivation
from .session import KeyedLocks, SessionResolver
from .store import ConversationStore
from .summarizer import SummarizationEngine, Summarizer

logger = logging.getLogger(__name__)

TurnKey = tuple[str, str, str]


@dataclass
class AssembledTurn:
    """Context for one turn, ready for the model."""

    context_blocks: list[ContextBlock]
    session_id: str
    contact_id: str
    is_reactivation: bool
    elapsed_days: float
    inbound_message_id: str
    session_created: bool = False
    contact_created: bool = False
    session_reactivated: bool = False
    dropped_messages: int = 0

    @property
    def total_tokens(self) -> int:
        return sum(block.tokens for block in self.context_blocks)

    def messages(self) -> list[dict[str, str]]:
        return to_messages(self.context_blocks)


@dataclass
class TurnResult:
    """What the channel layer should deliver for an inbound message."""

    text: str
    delivered: bool
    session_id: str | None = None
    contact_id: str | None = None
    is_reactivation: bool = False
    attempts: int = 0
    failure: str | None = None
    message_id: str | None = None


class ConversationEngine:
    """Resolves, assembles and records conversation turns.

    Turns on the same session key (organization, contact, channel) are
    processed strictly in arrival order, whichever identifier the contact
    wrote from. Unrelated keys run in parallel.

    ``resolve_and_assemble`` opens a turn and holds the session key until
    ``record_response`` or ``release_turn`` closes it, or until
    ``turn_lease_timeout`` expires. ``handle_message`` does both in one call.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: ConversationStore | None = None,
        llm: LanguageModel | None = None,
        event_log: JSONLLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or EngineConfig()
        if store is None:
            store = ConversationStore(self.config.db_path)
            store.init_db()
        self.store = store
        self.llm = llm or GroqLanguageModel(
            AsyncGroq(api_key=os.getenv("GROQ_API_KEY")),
            model=self.config.model,
        )
        self.event_log = event_log or get_logger()
        self.clock = clock

        self.identity = IdentityResolver(store, self.config.default_policy.default_country_code)
        self.sessions = SessionResolver(store)
        self.notes = OperatorNotes(store)
        self.assembler = ContextAssembler(self.config.system_instruction)
        self.summaries = SummarizationEngine(
            store, Summarizer(self.llm, self.config.default_policy.summary_max_tokens)
        )
        self.memory = MemoryManager(store, FactExtractor(self.llm))
        self.background = BackgroundTasks(
            attempts=self.config.postprocess_attempts,
            backoff=self.config.postprocess_backoff,
            event_log=self.event_log,
        )

        self._turn_locks = KeyedLocks()
        self._leases: dict[str, tuple[TurnKey, asyncio.TimerHandle]] = {}
        self._pending_jobs: set[tuple[str, str]] = set()
        self._sweeper_task: asyncio.Task | None = None

    def _now(self, now: datetime | None) -> datetime:
        return now or self.clock()

    def _resolve_identity(
        self,
        organization: str,
        channel: str,
        raw_identifier: str,
        now: datetime,
    ) -> IdentityResolution:
        policy = self.config.policy_for(organization)
        return self.identity.resolve(organization, channel, raw_identifier, now, policy.default_country_code)

    def _turn_key(self, contact: Contact, channel: str) -> TurnKey:
        return contact.organization, contact.id, channel.strip().lower()

    # -- turns ----------------------------------------------------------------

    async def resolve_and_assemble(
        self,
        organization: str,
        channel: str,
        raw_identifier: str,
        text: str,
        now: datetime | None = None,
    ) -> AssembledTurn:
        """Resolve contact and session, record the inbound message and assemble context.

        The session stays reserved for this turn until ``record_response``
        or ``release_turn`` is called for it.

        Raises:
            InvalidIdentifierError: If the identifier cannot be normalized.
            IdentityConflictError: If the identifier is owned by several contacts.
            ContextTooLargeError: If non-truncatable layers exceed the budget.
                The inbound message is recorded regardless.
        """
        now = self._now(now)
        identity = self._resolve_identity(organization, channel, raw_identifier, now)
        key = self._turn_key(identity.contact, channel)
        await self._turn_locks.acquire(key)
        try:
            turn = self._assemble_turn(organization, channel, identity, text, now)
        except BaseException:
            self._turn_locks.release(key)
            raise
        self._grant_lease(turn.session_id, key)
        return turn

    def _assemble_turn(
        self,
        organization: str,
        channel: str,
        identity: IdentityResolution,
        text: str,
        now: datetime,
    ) -> AssembledTurn:
        policy = self.config.policy_for(organization)
        # Re-read: extraction may have updated memory while this turn waited.
        contact = self.store.get_contact(identity.contact.id)

        resolution = self.sessions.resolve(contact, channel, now, policy.inactivity_hours)
        session = resolution.session
        signal = detect_reactivation(
            resolution.previous_last_message_at, now, policy.reactivation_days
        )

        if resolution.went_dormant:
            self._log_dormant(session, detected="resolution")
        if resolution.reactivated:
            # Fold whatever the dormancy sweep missed, up to but excluding this message.
            self._schedule_postprocess(session.id, on_dormancy=True, through_seq=session.message_count)

        inbound = self.store.append_message(session.id, "user", text, now)

        history = self.store.get_messages(
            session.id,
            after_seq=session.summary_through_seq,
            before_seq=inbound.seq,
            limit=policy.window_max_messages,
        )
        memory = contact.memory
        session_notes, contact_notes = self.notes.for_context(session)

        try:
            context = self.assembler.assemble(
                text,
                policy,
                memory=memory,
                session_notes=session_notes,
                contact_notes=contact_notes,
                summary=session.summary,
                briefing=build_briefing(signal, session.summary, memory),
                history=history,
            )
        except ContextTooLargeError as e:
            logger.error("Context too large for session %s: %s", session.id, e)
            self.event_log.log(
                "turn_failed",
                organization=organization,
                session_id=session.id,
                contact_id=contact.id,
                error="context_too_large",
                tokens=e.required_tokens,
            )
            raise

        self.event_log.log_turn_assembled(
            session.id,
            context.total_tokens,
            context.layers,
            organization=organization,
            contact_id=contact.id,
            is_reactivation=signal.is_reactivation,
        )

        return AssembledTurn(
            context_blocks=context.blocks,
            session_id=session.id,
            contact_id=contact.id,
            is_reactivation=signal.is_reactivation,
            elapsed_days=signal.elapsed_days,
            inbound_message_id=inbound.id,
            session_created=resolution.created,
            contact_created=identity.created,
            session_reactivated=resolution.reactivated,
            dropped_messages=context.dropped_messages,
        )

    def _grant_lease(self, session_id: str, key: TurnKey) -> None:
        handle = asyncio.get_running_loop().call_later(
            self.config.turn_lease_timeout, self._expire_lease, session_id
        )
        self._leases[session_id] = (key, handle)

    def _expire_lease(self, session_id: str) -> None:
        if self._release_lease(session_id):
            logger.warning(
                "Turn on session %s not completed within %.0fs, releasing it",
                session_id,
                self.config.turn_lease_timeout,
            )
            self.event_log.log("turn_expired", session_id=session_id)

    def _release_lease(self, session_id: str) -> bool:
        lease = self._leases.pop(session_id, None)
        if lease is None:
            return False
        key, handle = lease
        handle.cancel()
        self._turn_locks.release(key)
        return True

    def release_turn(self, session_id: str) -> None:
        """End a turn opened by ``resolve_and_assemble`` without recording a reply.

        The inbound message stays stored. Releasing twice is harmless.
        """
        self._release_lease(session_id)

    async def record_response(
        self,
        session_id: str,
        text: str,
        tool_calls: list[dict[str, Any]] | None = None,
        now: datetime | None = None,
    ) -> Message:
        """Persist the agent's reply, end the open turn and schedule post-processing.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        try:
            return self._record_response(session_id, text, tool_calls, self._now(now))
        finally:
            self._release_lease(session_id)

    def _record_response(
        self,
        session_id: str,
        text: str,
        tool_calls: list[dict[str, Any]] | None,
        now: datetime,
    ) -> Message:
        message = self.store.append_message(session_id, "assistant", text, now, tool_calls)
        self.event_log.log("response_recorded", session_id=session_id, seq=message.seq)
        self._schedule_postprocess(session_id)
        return message

    async def handle_message(
        self,
        organization: str,
        channel: str,
        raw_identifier: str,
        text: str,
        now: datetime | None = None,
    ) -> TurnResult:
        """Run a whole turn and return the text to deliver.

        The model call is retried once with the identical context. If it
        still fails the contact gets the configured fallback reply and no
        assistant message is recorded; the inbound message stays stored.
        """
        now = self._now(now)
        identity = self._resolve_identity(organization, channel, raw_identifier, now)
        async with self._turn_locks.hold(self._turn_key(identity.contact, channel)):
            try:
                turn = self._assemble_turn(organization, channel, identity, text, now)
            except ContextTooLargeError:
                return TurnResult(
                    text=self.config.fallback_reply,
                    delivered=False,
                    failure="context_too_large",
                )

            reply, attempts = await self._call_model(turn)
            if reply is None:
                self.event_log.log(
                    "turn_failed",
                    organization=organization,
                    session_id=turn.session_id,
                    contact_id=turn.contact_id,
                    attempt=attempts,
                    error="model_unavailable",
                )
                return TurnResult(
                    text=self.config.fallback_reply,
                    delivered=False,
                    session_id=turn.session_id,
                    contact_id=turn.contact_id,
                    is_reactivation=turn.is_reactivation,
                    attempts=attempts,
                    failure="model_unavailable",
                )

            message = self._record_response(
                turn.session_id, reply.text, reply.tool_calls or None, now
            )
            return TurnResult(
                text=reply.text,
                delivered=True,
                session_id=turn.session_id,
                contact_id=turn.contact_id,
                is_reactivation=turn.is_reactivation,
                attempts=attempts,
                message_id=message.id,
            )

    async def _call_model(self, turn: AssembledTurn) -> tuple[ModelReply | None, int]:
        messages = turn.messages()
        for attempt in (1, 2):
            started = time.monotonic()
            try:
                reply = await asyncio.wait_for(
                    self.llm.generate(messages, self.config.max_response_tokens),
                    timeout=self.config.model_timeout,
                )
            except asyncio.TimeoutError:
                error = f"timed out after {self.config.model_timeout}s"
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
            else:
                if reply.text.strip() or reply.tool_calls:
                    return reply, attempt
                error = "empty reply"

            logger.warning("Model call for session %s failed (attempt %d): %s", turn.session_id, attempt, error)
            self.event_log.log_model_failure(
                turn.session_id,
                attempt,
                error,
                duration_ms=(time.monotonic() - started) * 1000,
            )
        return None, 2

    # -- post-processing ------------------------------------------------------

    def _schedule_postprocess(
        self,
        session_id: str,
        on_dormancy: bool = False,
        through_seq: int | None = None,
    ) -> None:
        session = self.store.get_session(session_id)
        policy = self.config.policy_for(session.organization)
        bound = session.message_count if through_seq is None else through_seq

        if bound > session.summary_through_seq and (
            on_dormancy or self.summaries.needs_pass(session, policy.summarize_every)
        ):
            self._schedule_once("summarize", session.id, lambda: self._summarize(session.id, through_seq))

        if bound > session.extracted_through_seq and (
            on_dormancy or self.memory.needs_pass(session.unextracted_count, policy.extract_every)
        ):
            self._schedule_once("extract", session.id, lambda: self._extract(session.id, through_seq))

    def _schedule_once(self, kind: str, session_id: str, job: Callable[[], Any]) -> None:
        key = (kind, session_id)
        if key in self._pending_jobs:
            return
        self._pending_jobs.add(key)
        task = self.background.schedule(kind, job, session_id=session_id)
        task.add_done_callback(lambda _: self._pending_jobs.discard(key))

    async def _summarize(self, session_id: str, through_seq: int | None = None) -> None:
        session = self.store.get_session(session_id)
        policy = self.config.policy_for(session.organization)
        result = await self.summaries.run(
            session_id, self.clock(), policy.summary_max_tokens, through_seq=through_seq
        )
        if result.replaced:
            self.event_log.log_postprocess(
                "summary_replaced",
                session_id=session_id,
                through_seq=result.through_seq,
                messages_folded=result.messages_folded,
            )

    async def _extract(self, session_id: str, through_seq: int | None = None) -> None:
        result = await self.memory.extract_session(session_id, self.clock(), through_seq=through_seq)
        if result.applied:
            self.event_log.log_postprocess(
                "facts_merged",
                session_id=session_id,
                contact_id=result.batch.contact_id,
                updates=len(result.batch.updates),
                through_seq=result.through_seq,
            )

    async def sweep_dormant(self, now: datetime | None = None) -> int:
        """Mark idle sessions dormant and schedule their dormancy passes.

        Returns:
            Number of sessions that went dormant.
        """
        now = self._now(now)
        policies = [self.config.default_policy, *self.config.organization_policies.values()]
        shortest = min(p.inactivity_hours for p in policies)

        count = 0
        for session in self.sessions.idle_sessions(now, shortest):
            policy = self.config.policy_for(session.organization)
            if not self.sessions.is_idle(session, now, policy.inactivity_hours):
                continue
            self.sessions.mark_dormant(session, now)
            self._log_dormant(session, detected="sweep")
            self._schedule_postprocess(session.id, on_dormancy=True)
            count += 1
        return count

    def _log_dormant(self, session: Session, detected: str) -> None:
        self.event_log.log(
            "session_dormant",
            organization=session.organization,
            session_id=session.id,
            contact_id=session.contact_id,
            detected=detected,
        )

    async def _sweep_loop(self) -> None:
        """Background task for periodic dormancy sweeps."""
        while True:
            try:
                await asyncio.sleep(self.config.sweep_interval)
                await self.sweep_dormant()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Dormancy sweep failed")

    def start_sweeper(self) -> None:
        """Start the background dormancy sweep task."""
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self._sweep_loop())

    def stop_sweeper(self) -> None:
        """Stop the background dormancy sweep task."""
        if self._sweeper_task and not self._sweeper_task.done():
            self._sweeper_task.cancel()

    async def drain(self) -> None:
        """Wait for all scheduled summarization and extraction work."""
        await self.background.drain()

    async def close(self) -> None:
        self.stop_sweeper()
        for session_id in list(self._leases):
            self._release_lease(session_id)
        await self.drain()
        self.store.close()

    # -- operator notes -------------------------------------------------------

    def add_operator_note(
        self,
        target: NoteTarget,
        content: str,
        category: NoteCategory | str,
        priority: int = 3,
        author: str = "operator",
        now: datetime | None = None,
    ) -> str:
        """Pin a note to a session or contact. Visible from the very next turn.

        Returns:
            The new note id.
        """
        policy = self.config.policy_for(self.notes.organization_for(target))
        soft_cap = policy.max_session_notes if target.kind == "session" else policy.max_contact_notes
        added = self.notes.add(
            target,
            content,
            category,
            priority,
            author,
            now=self._now(now),
            soft_cap=soft_cap,
        )
        self.event_log.log(
            "note_added",
            organization=added.note.organization,
            note_id=added.note.id,
            target=f"{target.kind}:{target.id}",
            over_soft_cap=added.over_soft_cap,
        )
        return added.note.id

    def archive_operator_note(self, note_id: str, now: datetime | None = None) -> None:
        note = self.notes.archive(note_id, self._now(now))
        self.event_log.log("note_archived", organization=note.organization, note_id=note_id)

    def list_operator_notes(self, target: NoteTarget, include_archived: bool = False) -> list[OperatorNote]:
        return self.notes.list_notes(target, include_archived=include_archived)

    # -- contacts and sessions -------------------------------------------------

    def get_contact_memory(self, contact_id: str) -> dict[str, Any]:
        """Read-only copy of a contact's structured memory."""
        return self.memory.get_memory(contact_id)

    def link_identifier(self, contact_id: str, channel: str, raw_identifier: str, now: datetime | None = None) -> str:
        return self.identity.link_identifier(contact_id, channel, raw_identifier, self._now(now))

    def archive_contact(self, contact_id: str, now: datetime | None = None) -> None:
        self.store.archive_contact(contact_id, self._now(now))

    async def close_session(self, session_id: str, now: datetime | None = None) -> None:
        """Close a session after folding its remaining messages."""
        self._schedule_postprocess(session_id, on_dormancy=True)
        self.sessions.close(session_id, self._now(now))
