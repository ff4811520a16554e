"""Exception hierarchy for the conversation memory engine."""


class TetherError(Exception):
    """Base class for all engine errors."""


class InvalidIdentifierError(TetherError, ValueError):
    """A raw channel identifier could not be normalized."""


class IdentityConflictError(TetherError):
    """More than one contact owns the same normalized identifier.

    This is a data defect. Resolution never picks one of the contacts
    silently; the conflict is surfaced to the caller instead.
    """

    def __init__(self, organization: str, identifier: str, contact_ids: list[str]) -> None:
        self.organization = organization
        self.identifier = identifier
        self.contact_ids = contact_ids
        super().__init__(
            f"Identifier {identifier!r} in organization {organization!r} "
            f"is shared by contacts {', '.join(contact_ids)}"
        )


class ContactNotFoundError(TetherError, LookupError):
    """No contact with the given id."""


class SessionNotFoundError(TetherError, LookupError):
    """No session with the given id."""


class NoteNotFoundError(TetherError, LookupError):
    """No operator note with the given id."""


class InvalidNoteError(TetherError, ValueError):
    """Operator note fields failed validation."""


class ContextTooLargeError(TetherError):
    """Non-truncatable context layers alone exceed the token budget."""

    def __init__(self, required_tokens: int, max_tokens: int) -> None:
        self.required_tokens = required_tokens
        self.max_tokens = max_tokens
        super().__init__(
            f"Context too large: {required_tokens} tokens required by "
            f"non-truncatable layers, budget is {max_tokens}"
        )


class SummarizationError(TetherError):
    """A summarization pass produced no usable summary."""


class ExtractionError(TetherError):
    """A fact extraction pass produced no usable diff."""
