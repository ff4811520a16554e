"""Session resolution and per-key serialization."""

from .locks import KeyedLocks
from .resolver import SessionResolution, SessionResolver

__all__ = ["KeyedLocks", "SessionResolution", "SessionResolver"]
