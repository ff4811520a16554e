"""Token estimation and budget bookkeeping for context assembly."""

import math
from dataclasses import dataclass, field

from .errors import ContextTooLargeError

CHARS_PER_TOKEN = 4
BLOCK_OVERHEAD = 4  # role tag and separators per block
TRUNCATION_MARKER = " …"


def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def block_tokens(text: str) -> int:
    """Tokens a context block costs, including its overhead."""
    return estimate_tokens(text) + BLOCK_OVERHEAD


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Clip text so that it fits in ``max_tokens``.

    Cuts at the last whitespace before the limit when there is one and
    marks the cut. Returns an empty string if nothing fits.
    """
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text

    max_chars = max_tokens * CHARS_PER_TOKEN - len(TRUNCATION_MARKER)
    if max_chars <= 0:
        return ""
    clipped = text[:max_chars]
    cut = clipped.rfind(" ")
    if cut > max_chars // 2:
        clipped = clipped[:cut]
    return clipped.rstrip() + TRUNCATION_MARKER


@dataclass
class TokenBudget:
    """Tracks what remains of a fixed token ceiling while layers are added.

    Layers are charged in priority order. Non-truncatable layers are
    reserved up front with ``reserve``; everything else takes at most
    what is left.
    """

    max_tokens: int
    used: int = 0
    charges: dict[str, int] = field(default_factory=dict)

    @property
    def remaining(self) -> int:
        return max(0, self.max_tokens - self.used)

    def allocation(self, share: float) -> int:
        """Token allocation for a layer that gets a fixed share of the budget."""
        return int(self.max_tokens * share)

    def reserve(self, layer: str, tokens: int) -> None:
        """Charge tokens that cannot be truncated.

        Raises:
            ContextTooLargeError: If the reservation overflows the budget.
        """
        if self.used + tokens > self.max_tokens:
            raise ContextTooLargeError(self.used + tokens, self.max_tokens)
        self.charge(layer, tokens)

    def fits(self, tokens: int) -> bool:
        return tokens <= self.remaining

    def charge(self, layer: str, tokens: int) -> None:
        self.used += tokens
        self.charges[layer] = self.charges.get(layer, 0) + tokens
