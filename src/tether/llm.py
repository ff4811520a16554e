"""Language model capability and its Groq implementation.

The engine only depends on the ``LanguageModel`` protocol, so any
provider can be plugged in.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from groq import AsyncGroq


@dataclass
class ModelReply:
    """Text generated by the model, with any tool-call requests."""

    text: str
    tool_calls: list[dict[str, Any]] = field(default_factory=list)


class LanguageModel(Protocol):
    """What the engine needs from a language model."""

    async def generate(self, messages: list[dict[str, str]], max_tokens: int) -> ModelReply:
        """Generate a reply for ordered role-tagged blocks."""
        ...

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a single prompt and return the text."""
        ...


class GroqLanguageModel:
    """LanguageModel implementation that wraps AsyncGroq.

    Example:
        from groq import AsyncGroq
        from tether.llm import GroqLanguageModel

        llm = GroqLanguageModel(AsyncGroq(api_key="..."), model="llama-3.1-70b-versatile")
        reply = await llm.generate([{"role": "user", "content": "hi"}], max_tokens=256)
    """

    def __init__(
        self,
        client: AsyncGroq,
        model: str = "llama-3.1-70b-versatile",
        temperature: float = 0.4,
    ) -> None:
        """Initialize the Groq wrapper.

        Args:
            client: The AsyncGroq client instance to wrap.
            model: The model to use for completions.
            temperature: Sampling temperature for conversational replies.
        """
        self._client = client
        self._model = model
        self._temperature = temperature

    async def generate(self, messages: list[dict[str, str]], max_tokens: int) -> ModelReply:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=self._temperature,
        )

        message = response.choices[0].message
        tool_calls = []
        for call in getattr(message, "tool_calls", None) or []:
            try:
                args = json.loads(call.function.arguments)
            except (json.JSONDecodeError, TypeError):
                args = {}
            tool_calls.append({"id": call.id, "name": call.function.name, "args": args})

        return ModelReply(text=message.content or "", tool_calls=tool_calls)

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a prompt with low temperature, for summaries and extraction."""
        messages: list[dict[str, Any]] = []

        if system:
            messages.append({"role": "system", "content": system})

        messages.append({"role": "user", "content": prompt})

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=0.1,  # Low temperature for consistent output
        )

        return response.choices[0].message.content or ""

    @property
    def model(self) -> str:
        """Return the model being used."""
        return self._model
