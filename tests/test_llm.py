"""Tests for the Groq language model adapter."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from tether.llm import GroqLanguageModel


def _response(content, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_response("Hello!"))
    return client


@pytest.mark.asyncio
async def test_generate_passes_messages(client: MagicMock):
    llm = GroqLanguageModel(client, model="test-model")
    messages = [{"role": "system", "content": "be nice"}, {"role": "user", "content": "hi"}]

    reply = await llm.generate(messages, max_tokens=128)

    assert reply.text == "Hello!"
    assert reply.tool_calls == []
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["messages"] == messages
    assert kwargs["max_tokens"] == 128


@pytest.mark.asyncio
async def test_generate_parses_tool_calls(client: MagicMock):
    call = SimpleNamespace(
        id="call_1",
        function=SimpleNamespace(name="book_demo", arguments='{"day": "friday"}'),
    )
    bad = SimpleNamespace(id="call_2", function=SimpleNamespace(name="noop", arguments="{oops"))
    client.chat.completions.create.return_value = _response(None, [call, bad])

    reply = await GroqLanguageModel(client).generate([], max_tokens=64)

    assert reply.text == ""
    assert reply.tool_calls == [
        {"id": "call_1", "name": "book_demo", "args": {"day": "friday"}},
        {"id": "call_2", "name": "noop", "args": {}},
    ]


@pytest.mark.asyncio
async def test_complete_with_system(client: MagicMock):
    client.chat.completions.create.return_value = _response("People: Dana")

    result = await GroqLanguageModel(client).complete("summarize", system="You summarize.")

    assert result == "People: Dana"
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"][0] == {"role": "system", "content": "You summarize."}
    assert kwargs["messages"][1] == {"role": "user", "content": "summarize"}
    assert kwargs["temperature"] == 0.1


@pytest.mark.asyncio
async def test_complete_without_system(client: MagicMock):
    await GroqLanguageModel(client).complete("extract")

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"] == [{"role": "user", "content": "extract"}]


def test_model_property(client: MagicMock):
    assert GroqLanguageModel(client, model="llama-3.1-8b-instant").model == "llama-3.1-8b-instant"
