"""LLM client contract and its Groq implementation.

The memory engine only needs one call shape: send a list of chat messages
with a system prompt and get text back. Anything that implements
``LLMClient`` can be plugged into the summarizer and the fact extractor.
"""

from typing import Any, Protocol

from groq import AsyncGroq

DEFAULT_MODEL = "llama-3.1-70b-versatile"


class LLMClient(Protocol):
    """Protocol for the language-model call used by the memory engine.

    Implementations may raise on transport or API errors; callers decide
    whether that is fatal.
    """

    async def send(
        self,
        messages: list[dict[str, str]],
        system_prompt: str,
        max_tokens: int,
    ) -> str:
        """Send a non-streaming chat request and return the reply text."""
        ...


class GroqLLMClient:
    """LLMClient implementation that wraps AsyncGroq.

    Example:
        from groq import AsyncGroq
        from ember.llm_client import GroqLLMClient

        llm = GroqLLMClient(AsyncGroq(api_key="..."), model="llama-3.1-70b-versatile")
        text = await llm.send([{"role": "user", "content": "Hi"}], "Be brief.", 256)
    """

    def __init__(
        self,
        client: AsyncGroq,
        model: str = DEFAULT_MODEL,
        temperature: float | None = None,
    ) -> None:
        """Initialize the Groq LLM client wrapper.

        Args:
            client: The AsyncGroq client instance to wrap.
            model: The model to use for completions.
            temperature: Optional sampling temperature.
        """
        self._client = client
        self._model = model
        self._temperature = temperature

    async def send(
        self,
        messages: list[dict[str, str]],
        system_prompt: str,
        max_tokens: int,
    ) -> str:
        """Send messages and return the text response.

        Args:
            messages: Chat messages with "role" and "content".
            system_prompt: System prompt, omitted when empty.
            max_tokens: Upper bound on the reply length.

        Returns:
            The LLM's text response, empty string if it returned no content.
        """
        payload: list[dict[str, Any]] = []

        if system_prompt:
            payload.append({"role": "system", "content": system_prompt})

        payload.extend(messages)

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": payload,
            "max_tokens": max_tokens,
        }
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature

        response = await self._client.chat.completions.create(**kwargs)

        return response.choices[0].message.content or ""

    @property
    def model(self) -> str:
        """Return the model being used."""
        return self._model
