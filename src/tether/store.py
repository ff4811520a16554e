"""SQLite storage for contacts, sessions, messages, operator notes and fact batches."""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from .errors import ContactNotFoundError, NoteNotFoundError, SessionNotFoundError
from .models import (
    Contact,
    ExtractedFactBatch,
    Message,
    NoteCategory,
    NoteStatus,
    NoteTarget,
    OperatorNote,
    Session,
    SessionStatus,
    from_iso,
    to_iso,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id          TEXT PRIMARY KEY,
    organization TEXT NOT NULL,
    memory      TEXT NOT NULL DEFAULT '{}',
    archived    INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contact_identifiers (
    organization TEXT NOT NULL,
    contact_id  TEXT NOT NULL REFERENCES contacts(id),
    identifier  TEXT NOT NULL,
    channel     TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    UNIQUE(organization, contact_id, identifier)
);
CREATE INDEX IF NOT EXISTS idx_identifiers_lookup
    ON contact_identifiers(organization, identifier);

CREATE TABLE IF NOT EXISTS sessions (
    id          TEXT PRIMARY KEY,
    organization TEXT NOT NULL,
    contact_id  TEXT NOT NULL REFERENCES contacts(id),
    channel     TEXT NOT NULL,
    status      TEXT NOT NULL DEFAULT 'active',
    summary     TEXT NOT NULL DEFAULT '',
    summary_through_seq   INTEGER NOT NULL DEFAULT 0,
    extracted_through_seq INTEGER NOT NULL DEFAULT 0,
    message_count INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL,
    last_message_at TEXT,
    updated_at  TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_open_key
    ON sessions(organization, contact_id, channel) WHERE status != 'closed';
CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status, last_message_at);

CREATE TABLE IF NOT EXISTS messages (
    id          TEXT PRIMARY KEY,
    session_id  TEXT NOT NULL REFERENCES sessions(id),
    seq         INTEGER NOT NULL,
    role        TEXT NOT NULL,
    content     TEXT NOT NULL,
    tool_calls  TEXT,
    created_at  TEXT NOT NULL,
    UNIQUE(session_id, seq)
);

CREATE TABLE IF NOT EXISTS operator_notes (
    id          TEXT PRIMARY KEY,
    organization TEXT NOT NULL,
    target_kind TEXT NOT NULL,
    target_id   TEXT NOT NULL,
    content     TEXT NOT NULL,
    category    TEXT NOT NULL,
    priority    INTEGER NOT NULL,
    status      TEXT NOT NULL DEFAULT 'active',
    author      TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    archived_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_notes_target
    ON operator_notes(target_kind, target_id, status);

CREATE TABLE IF NOT EXISTS fact_batches (
    id          TEXT PRIMARY KEY,
    contact_id  TEXT NOT NULL REFERENCES contacts(id),
    session_id  TEXT NOT NULL,
    from_seq    INTEGER NOT NULL,
    to_seq      INTEGER NOT NULL,
    updates     TEXT NOT NULL,
    created_at  TEXT NOT NULL
);
"""


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class ConversationStore:
    """Durable storage backed by a local SQLite database.

    Messages are append-only. Contact memory and session summary fields
    are the only values mutated in place.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file, or ``":memory:"``.
        """
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def init_db(self) -> None:
        """Create all tables if they don't exist."""
        conn = self._get_connection()
        conn.executescript(SCHEMA)
        conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically; roll back everything on error."""
        conn = self._get_connection()
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -- contacts -----------------------------------------------------------

    def create_contact(
        self,
        organization: str,
        identifier: str,
        channel: str,
        now: datetime,
    ) -> Contact:
        """Create a contact owning a single normalized identifier."""
        contact_id = _new_id("ct")
        stamp = to_iso(now)
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO contacts (id, organization, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (contact_id, organization, stamp, stamp),
            )
            conn.execute(
                """
                INSERT INTO contact_identifiers (organization, contact_id, identifier, channel, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (organization, contact_id, identifier, channel, stamp),
            )
        return self.get_contact(contact_id)

    def add_identifier(
        self,
        organization: str,
        contact_id: str,
        identifier: str,
        channel: str,
        now: datetime,
    ) -> None:
        """Attach an identifier to a contact. Duplicates on the same contact are ignored."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO contact_identifiers
                    (organization, contact_id, identifier, channel, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (organization, contact_id, identifier, channel, to_iso(now)),
            )

    def find_contact_ids(self, organization: str, identifier: str) -> list[str]:
        """Return every contact id owning a normalized identifier."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            SELECT DISTINCT contact_id FROM contact_identifiers
            WHERE organization = ? AND identifier = ?
            ORDER BY contact_id
            """,
            (organization, identifier),
        )
        return [row["contact_id"] for row in cursor.fetchall()]

    def get_contact(self, contact_id: str) -> Contact:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        if row is None:
            raise ContactNotFoundError(contact_id)
        identifiers = [
            r["identifier"]
            for r in conn.execute(
                "SELECT identifier FROM contact_identifiers WHERE contact_id = ? ORDER BY created_at",
                (contact_id,),
            )
        ]
        return Contact(
            id=row["id"],
            organization=row["organization"],
            identifiers=identifiers,
            memory=json.loads(row["memory"]),
            archived=bool(row["archived"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def archive_contact(self, contact_id: str, now: datetime) -> None:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE contacts SET archived = 1, updated_at = ? WHERE id = ?",
                (to_iso(now), contact_id),
            )
            if cursor.rowcount == 0:
                raise ContactNotFoundError(contact_id)

    def apply_fact_batch(self, batch: ExtractedFactBatch, memory: dict[str, Any]) -> str:
        """Write new contact memory together with the batch that produced it.

        The session's extraction boundary advances in the same transaction.

        Returns:
            The id of the stored fact batch.
        """
        batch_id = _new_id("fb")
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE contacts SET memory = ?, updated_at = ? WHERE id = ?",
                (json.dumps(memory, ensure_ascii=False), to_iso(batch.created_at), batch.contact_id),
            )
            if cursor.rowcount == 0:
                raise ContactNotFoundError(batch.contact_id)
            conn.execute(
                """
                INSERT INTO fact_batches (id, contact_id, session_id, from_seq, to_seq, updates, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    batch_id,
                    batch.contact_id,
                    batch.provenance.session_id,
                    batch.provenance.from_seq,
                    batch.provenance.to_seq,
                    json.dumps([u.to_dict() for u in batch.updates], ensure_ascii=False),
                    to_iso(batch.created_at),
                ),
            )
            conn.execute(
                """
                UPDATE sessions SET extracted_through_seq = ?
                WHERE id = ? AND extracted_through_seq < ?
                """,
                (batch.provenance.to_seq, batch.provenance.session_id, batch.provenance.to_seq),
            )
        return batch_id

    def list_fact_batches(self, contact_id: str) -> list[dict[str, Any]]:
        conn = self._get_connection()
        cursor = conn.execute(
            "SELECT * FROM fact_batches WHERE contact_id = ? ORDER BY created_at, rowid",
            (contact_id,),
        )
        return [
            {
                "id": row["id"],
                "session_id": row["session_id"],
                "from_seq": row["from_seq"],
                "to_seq": row["to_seq"],
                "updates": json.loads(row["updates"]),
                "created_at": row["created_at"],
            }
            for row in cursor.fetchall()
        ]

    # -- sessions -----------------------------------------------------------

    def create_session(
        self,
        organization: str,
        contact_id: str,
        channel: str,
        now: datetime,
    ) -> Session:
        session_id = _new_id("ss")
        stamp = to_iso(now)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, organization, contact_id, channel, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'active', ?, ?)
                """,
                (session_id, organization, contact_id, channel, stamp, stamp),
            )
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> Session:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return self._row_to_session(row)

    def find_open_session(self, organization: str, contact_id: str, channel: str) -> Session | None:
        """Return the non-closed session for a key, if any."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT * FROM sessions
            WHERE organization = ? AND contact_id = ? AND channel = ? AND status != 'closed'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (organization, contact_id, channel),
        ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self, contact_id: str) -> list[Session]:
        conn = self._get_connection()
        cursor = conn.execute(
            "SELECT * FROM sessions WHERE contact_id = ? ORDER BY created_at",
            (contact_id,),
        )
        return [self._row_to_session(row) for row in cursor.fetchall()]

    def list_idle_sessions(self, cutoff: datetime) -> list[Session]:
        """Active sessions whose last message is older than ``cutoff``."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            SELECT * FROM sessions
            WHERE status = 'active' AND last_message_at IS NOT NULL AND last_message_at < ?
            ORDER BY last_message_at
            """,
            (to_iso(cutoff),),
        )
        return [self._row_to_session(row) for row in cursor.fetchall()]

    def set_session_status(self, session_id: str, status: SessionStatus, now: datetime) -> None:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, to_iso(now), session_id),
            )
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)

    def replace_summary(self, session_id: str, summary: str, through_seq: int, now: datetime) -> bool:
        """Replace the rolling summary if it covers more messages than the stored one.

        Returns:
            True if the summary was replaced.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sessions SET summary = ?, summary_through_seq = ?, updated_at = ?
                WHERE id = ? AND summary_through_seq < ?
                """,
                (summary, through_seq, to_iso(now), session_id, through_seq),
            )
            return cursor.rowcount > 0

    def mark_extracted(self, session_id: str, through_seq: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE sessions SET extracted_through_seq = ?
                WHERE id = ? AND extracted_through_seq < ?
                """,
                (through_seq, session_id, through_seq),
            )

    # -- messages -----------------------------------------------------------

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        now: datetime,
        tool_calls: list[dict[str, Any]] | None = None,
    ) -> Message:
        """Append a message to a session. Messages are never updated or deleted."""
        message_id = _new_id("msg")
        stamp = to_iso(now)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT message_count FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                raise SessionNotFoundError(session_id)
            seq = row["message_count"] + 1
            conn.execute(
                """
                INSERT INTO messages (id, session_id, seq, role, content, tool_calls, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    session_id,
                    seq,
                    role,
                    content,
                    json.dumps(tool_calls) if tool_calls else None,
                    stamp,
                ),
            )
            conn.execute(
                """
                UPDATE sessions SET message_count = ?, last_message_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (seq, stamp, stamp, session_id),
            )
        return Message(
            id=message_id,
            session_id=session_id,
            seq=seq,
            role=role,
            content=content,
            created_at=from_iso(stamp),
            tool_calls=tool_calls,
        )

    def get_messages(
        self,
        session_id: str,
        after_seq: int = 0,
        before_seq: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Get messages in ascending order.

        Args:
            session_id: The session to read.
            after_seq: Only messages with a higher sequence number.
            before_seq: Only messages with a lower sequence number.
            limit: Keep only the most recent ``limit`` matching messages.
        """
        if limit is not None and limit <= 0:
            return []

        query = "SELECT * FROM messages WHERE session_id = ? AND seq > ?"
        params: list[Any] = [session_id, after_seq]
        if before_seq is not None:
            query += " AND seq < ?"
            params.append(before_seq)
        query += " ORDER BY seq DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = self._get_connection()
        rows = conn.execute(query, params).fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    # -- operator notes -----------------------------------------------------

    def insert_note(self, note: OperatorNote) -> OperatorNote:
        note_id = _new_id("note")
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO operator_notes
                    (id, organization, target_kind, target_id, content, category,
                     priority, status, author, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
                """,
                (
                    note_id,
                    note.organization,
                    note.target.kind,
                    note.target.id,
                    note.content,
                    note.category.value,
                    note.priority,
                    note.author,
                    to_iso(note.created_at),
                ),
            )
        return self.get_note(note_id)

    def get_note(self, note_id: str) -> OperatorNote:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM operator_notes WHERE id = ?", (note_id,)).fetchone()
        if row is None:
            raise NoteNotFoundError(note_id)
        return self._row_to_note(row)

    def archive_note(self, note_id: str, now: datetime) -> bool:
        """Archive a note. Returns False if it was already archived."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE operator_notes SET status = 'archived', archived_at = ?
                WHERE id = ? AND status = 'active'
                """,
                (to_iso(now), note_id),
            )
            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM operator_notes WHERE id = ?", (note_id,)
                ).fetchone()
                if exists is None:
                    raise NoteNotFoundError(note_id)
                return False
            return True

    def list_notes(self, target: NoteTarget, include_archived: bool = False) -> list[OperatorNote]:
        """Notes for a target, highest priority first, newest first within a priority."""
        query = "SELECT * FROM operator_notes WHERE target_kind = ? AND target_id = ?"
        if not include_archived:
            query += " AND status = 'active'"
        query += " ORDER BY priority DESC, created_at DESC, rowid DESC"
        conn = self._get_connection()
        rows = conn.execute(query, (target.kind, target.id)).fetchall()
        return [self._row_to_note(row) for row in rows]

    def count_active_notes(self, target: NoteTarget) -> int:
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT COUNT(*) AS n FROM operator_notes
            WHERE target_kind = ? AND target_id = ? AND status = 'active'
            """,
            (target.kind, target.id),
        ).fetchone()
        return row["n"]

    # -- row mapping ----------------------------------------------------------

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            organization=row["organization"],
            contact_id=row["contact_id"],
            channel=row["channel"],
            status=SessionStatus(row["status"]),
            summary=row["summary"],
            summary_through_seq=row["summary_through_seq"],
            extracted_through_seq=row["extracted_through_seq"],
            message_count=row["message_count"],
            created_at=from_iso(row["created_at"]),
            last_message_at=from_iso(row["last_message_at"]),
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            seq=row["seq"],
            role=row["role"],
            content=row["content"],
            created_at=from_iso(row["created_at"]),
            tool_calls=json.loads(row["tool_calls"]) if row["tool_calls"] else None,
        )

    def _row_to_note(self, row: sqlite3.Row) -> OperatorNote:
        return OperatorNote(
            id=row["id"],
            organization=row["organization"],
            target=NoteTarget(kind=row["target_kind"], id=row["target_id"]),
            content=row["content"],
            category=NoteCategory(row["category"]),
            priority=row["priority"],
            status=NoteStatus(row["status"]),
            author=row["author"],
            created_at=from_iso(row["created_at"]),
            archived_at=from_iso(row["archived_at"]),
        )
