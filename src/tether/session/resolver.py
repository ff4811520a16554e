"""Session resolver: (contact, channel) to one active session."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..models import Contact, Session, SessionStatus
from ..store import ConversationStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


@dataclass
class SessionResolution:
    """Outcome of resolving a session for an inbound message.

    Attributes:
        session: The active session, after any status change.
        created: True if a new session was opened.
        reactivated: True if a dormant session was brought back in place.
        elapsed_days: Days since the session's last message, 0.0 if new.
        previous_last_message_at: Last message time before this turn.
        went_dormant: True if the session went dormant here rather than
            through a sweep.
    """

    session: Session
    created: bool = False
    reactivated: bool = False
    elapsed_days: float = 0.0
    previous_last_message_at: datetime | None = None
    went_dormant: bool = False


def elapsed_days(since: datetime | None, now: datetime) -> float:
    if since is None:
        return 0.0
    return max(0.0, (now - since).total_seconds() / SECONDS_PER_DAY)


class SessionResolver:
    """Keeps at most one open session per (organization, contact, channel).

    A session idle past the inactivity threshold becomes dormant. A new
    message on a dormant session reactivates it in place; sessions are
    never forked.
    """

    def __init__(self, store: ConversationStore) -> None:
        self.store = store

    def is_idle(self, session: Session, now: datetime, inactivity_hours: float) -> bool:
        if session.last_message_at is None:
            return False
        return now - session.last_message_at > timedelta(hours=inactivity_hours)

    def resolve(
        self,
        contact: Contact,
        channel: str,
        now: datetime,
        inactivity_hours: float = 24.0,
    ) -> SessionResolution:
        """Return the session for a contact on a channel, creating or reactivating it."""
        channel = channel.strip().lower()
        session = self.store.find_open_session(contact.organization, contact.id, channel)

        if session is None:
            session = self.store.create_session(contact.organization, contact.id, channel, now)
            logger.info("Opened session %s for contact %s on %s", session.id, contact.id, channel)
            return SessionResolution(session=session, created=True)

        gap = elapsed_days(session.last_message_at, now)
        previous = session.last_message_at
        went_dormant = False

        if session.status == SessionStatus.ACTIVE and self.is_idle(session, now, inactivity_hours):
            # The sweeper has not caught this one yet; it went dormant before this message.
            session.status = SessionStatus.DORMANT
            went_dormant = True

        if session.status == SessionStatus.DORMANT:
            self.store.set_session_status(session.id, SessionStatus.ACTIVE, now)
            session.status = SessionStatus.ACTIVE
            logger.info("Reactivated session %s after %.1f days", session.id, gap)
            return SessionResolution(
                session=session,
                reactivated=True,
                elapsed_days=gap,
                previous_last_message_at=previous,
                went_dormant=went_dormant,
            )

        return SessionResolution(
            session=session,
            elapsed_days=gap,
            previous_last_message_at=previous,
        )

    def mark_dormant(self, session: Session, now: datetime) -> None:
        self.store.set_session_status(session.id, SessionStatus.DORMANT, now)
        session.status = SessionStatus.DORMANT

    def close(self, session_id: str, now: datetime) -> None:
        """Close a session; the next message on its key opens a new one."""
        self.store.set_session_status(session_id, SessionStatus.CLOSED, now)

    def idle_sessions(self, now: datetime, inactivity_hours: float) -> list[Session]:
        return self.store.list_idle_sessions(now - timedelta(hours=inactivity_hours))
