"""Shared fixtures: temporary stores and a scripted language model."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from tether.config import EngineConfig
from tether.engine import ConversationEngine
from tether.llm import ModelReply
from tether.logging import JSONLLogger
from tether.store import ConversationStore
from tether.summarizer import SUMMARY_SYSTEM

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

SUMMARY_TEXT = (
    "People: Dana Reyes from Acme\n"
    "Products & pricing: Pro plan at $49/month\n"
    "Objections: price too high\n"
    "Commitments: demo on Friday\n"
    "Sentiment: positive"
)


class ScriptedModel:
    """LanguageModel fake that records calls.

    ``replies`` are consumed in order by ``generate``; an exception in the
    list is raised instead of returned. Summaries and extraction answers
    come from ``summary`` and ``extraction``.
    """

    def __init__(
        self,
        replies: list[Any] | None = None,
        summary: Any = SUMMARY_TEXT,
        extraction: Any = "{}",
    ) -> None:
        self.replies = list(replies or [])
        self.summary = summary
        self.extraction = extraction
        self.generate_calls: list[list[dict[str, str]]] = []
        self.summary_calls: list[str] = []
        self.extraction_calls: list[str] = []

    async def generate(self, messages: list[dict[str, str]], max_tokens: int) -> ModelReply:
        self.generate_calls.append(messages)
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return ModelReply(text=reply)
        return ModelReply(text=f"reply {len(self.generate_calls)}")

    async def complete(self, prompt: str, system: str | None = None) -> str:
        if system == SUMMARY_SYSTEM:
            self.summary_calls.append(prompt)
            return self._answer(self.summary, prompt)
        self.extraction_calls.append(prompt)
        return self._answer(self.extraction, prompt)

    def _answer(self, answer: Any, prompt: str) -> str:
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            return answer(prompt)
        if isinstance(answer, dict):
            return json.dumps(answer)
        return answer


@pytest.fixture
def store(tmp_path: Path) -> ConversationStore:
    """Create a ConversationStore with a temporary database."""
    store = ConversationStore(tmp_path / "tether.db")
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def event_log(tmp_path: Path) -> JSONLLogger:
    return JSONLLogger(log_dir=tmp_path / "logs")


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        db_path=tmp_path / "tether.db",
        system_instruction="You are a helpful sales assistant.",
        postprocess_attempts=2,
        postprocess_backoff=0,
        model_timeout=1.0,
    )


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def engine(
    config: EngineConfig,
    store: ConversationStore,
    model: ScriptedModel,
    event_log: JSONLLogger,
) -> ConversationEngine:
    return ConversationEngine(config, store=store, llm=model, event_log=event_log, clock=lambda: T0)
