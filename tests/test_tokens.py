"""Tests for token estimation and budgeting."""

import pytest

from tether.errors import ContextTooLargeError
from tether.tokens import (
    BLOCK_OVERHEAD,
    TRUNCATION_MARKER,
    TokenBudget,
    block_tokens,
    estimate_tokens,
    truncate_to_tokens,
)


@pytest.mark.parametrize("text,expected", [("", 0), ("abcd", 1), ("abcde", 2), ("x" * 400, 100)])
def test_estimate_tokens(text: str, expected: int):
    assert estimate_tokens(text) == expected


def test_block_tokens_adds_overhead():
    assert block_tokens("abcd") == 1 + BLOCK_OVERHEAD
    assert block_tokens("") == BLOCK_OVERHEAD


class TestTruncate:
    def test_short_text_unchanged(self):
        assert truncate_to_tokens("hello there", 10) == "hello there"

    def test_long_text_clipped_and_marked(self):
        text = " ".join(["word"] * 200)
        clipped = truncate_to_tokens(text, 20)

        assert clipped.endswith(TRUNCATION_MARKER)
        assert estimate_tokens(clipped) <= 20
        assert text.startswith(clipped[: -len(TRUNCATION_MARKER)])

    def test_nothing_fits(self):
        assert truncate_to_tokens("hello", 0) == ""
        assert truncate_to_tokens("hello", -3) == ""


class TestTokenBudget:
    def test_reserve_and_remaining(self):
        budget = TokenBudget(100)
        budget.reserve("system", 30)
        budget.charge("history", 20)

        assert budget.remaining == 50
        assert budget.charges == {"system": 30, "history": 20}
        assert budget.fits(50)
        assert not budget.fits(51)

    def test_reserve_overflow(self):
        budget = TokenBudget(100)
        budget.reserve("system", 90)

        with pytest.raises(ContextTooLargeError) as exc_info:
            budget.reserve("inbound", 20)

        assert exc_info.value.required_tokens == 110
        assert exc_info.value.max_tokens == 100
        assert budget.used == 90

    def test_allocation(self):
        assert TokenBudget(4000).allocation(0.05) == 200
