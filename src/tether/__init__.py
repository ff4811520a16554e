"""Tether: conversation memory engine for multi-channel agents."""

from .config import EngineConfig, PolicyConfig
from .context import ContextBlock
from .engine import AssembledTurn, ConversationEngine, TurnResult
from .errors import (
    ContextTooLargeError,
    IdentityConflictError,
    InvalidIdentifierError,
    TetherError,
)
from .models import NoteCategory, NoteTarget

__version__ = "0.1.0"

__all__ = [
    "AssembledTurn",
    "ContextBlock",
    "ContextTooLargeError",
    "ConversationEngine",
    "EngineConfig",
    "IdentityConflictError",
    "InvalidIdentifierError",
    "NoteCategory",
    "NoteTarget",
    "PolicyConfig",
    "TetherError",
    "TurnResult",
]
