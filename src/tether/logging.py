"""Structured event log: one JSON object per line.

Every turn and background pass leaves an event here, keyed by
organization, session and contact so a conversation can be traced
end to end. Diagnostics go through the standard ``logging`` module.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

from .models import to_iso, utcnow


@dataclass
class LogEntry:
    """One event line."""

    timestamp: str
    event: str
    organization: str | None = None
    session_id: str | None = None
    contact_id: str | None = None
    duration_ms: float | None = None
    tokens: int | None = None
    attempt: int | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Drop unset fields so lines stay short."""
        return {key: value for key, value in asdict(self).items() if value not in (None, {}, [])}


class JSONLLogger:
    """Appends events to ``events.jsonl`` and rotates it by size.

    Rotated files are kept as ``events.1.jsonl`` (newest) through
    ``events.<backup_count>.jsonl``; older ones are deleted.
    """

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "events.jsonl",
        max_size_mb: float = 10.0,
        backup_count: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.log_dir = Path(log_dir) if log_dir is not None else Path.home() / ".tether" / "logs"
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self.backup_count = backup_count
        self.clock = clock

    @property
    def log_path(self) -> Path:
        return self.log_dir / self.filename

    def _backup_path(self, index: int) -> Path:
        path = self.log_path
        return path.with_name(f"{path.stem}.{index}{path.suffix}")

    def _rotate(self) -> None:
        if self.backup_count <= 0:
            self.log_path.unlink()
            return
        oldest = self._backup_path(self.backup_count)
        if oldest.exists():
            oldest.unlink()
        for index in range(self.backup_count - 1, 0, -1):
            source = self._backup_path(index)
            if source.exists():
                source.rename(self._backup_path(index + 1))
        self.log_path.rename(self._backup_path(1))

    def _append(self, entry: LogEntry) -> None:
        if self.log_path.exists() and self.log_path.stat().st_size >= self.max_size_bytes:
            self._rotate()
        line = json.dumps(entry.to_dict(), ensure_ascii=False, default=str)
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def log(
        self,
        event: str,
        *,
        organization: str | None = None,
        session_id: str | None = None,
        contact_id: str | None = None,
        duration_ms: float | None = None,
        tokens: int | None = None,
        attempt: int | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Record an event. Unknown keyword arguments land in ``extra``."""
        self._append(
            LogEntry(
                timestamp=to_iso(self.clock()),
                event=event,
                organization=organization,
                session_id=session_id,
                contact_id=contact_id,
                duration_ms=round(duration_ms, 1) if duration_ms is not None else None,
                tokens=tokens,
                attempt=attempt,
                error=error,
                extra=extra,
            )
        )

    def log_turn_assembled(
        self,
        session_id: str,
        tokens: int,
        layers: list[str],
        *,
        organization: str | None = None,
        contact_id: str | None = None,
        is_reactivation: bool = False,
    ) -> None:
        self.log(
            "turn_assembled",
            organization=organization,
            session_id=session_id,
            contact_id=contact_id,
            tokens=tokens,
            layers=layers,
            is_reactivation=is_reactivation,
        )

    def log_model_failure(
        self,
        session_id: str,
        attempt: int,
        error: str,
        *,
        duration_ms: float | None = None,
    ) -> None:
        self.log(
            "model_call_failed",
            session_id=session_id,
            attempt=attempt,
            error=error,
            duration_ms=duration_ms,
        )

    def log_postprocess(
        self,
        event: str,
        *,
        session_id: str | None = None,
        contact_id: str | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Record the outcome of a summarization or extraction pass."""
        self.log(event, session_id=session_id, contact_id=contact_id, error=error, **extra)

    def events(self, event: str | None = None) -> Iterator[dict[str, Any]]:
        """Iterate over events in the current file, optionally of one type."""
        if not self.log_path.exists():
            return
        with open(self.log_path, encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                record = json.loads(line)
                if event is None or record["event"] == event:
                    yield record


_logger: JSONLLogger | None = None


def get_logger() -> JSONLLogger:
    """Return the process-wide event log, creating it on first use."""
    global _logger
    if _logger is None:
        _logger = JSONLLogger()
    return _logger


def configure_logger(log_dir: str | Path | None = None, max_size_mb: float = 10.0) -> JSONLLogger:
    """Replace the process-wide event log."""
    global _logger
    _logger = JSONLLogger(log_dir=log_dir, max_size_mb=max_size_mb)
    return _logger
