"""Abstract base class for LLM adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from morphlex.schemas import LLMMessage, LLMResponse


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters.

    The script generator talks to providers only through this interface,
    so any chat-completion backend can serve plans and transform scripts.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'deepseek')."""
        ...

    @abstractmethod
    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        """Send a chat completion request.

        Args:
            messages: List of conversation messages
            model: Model name (uses default if None)
            temperature: Sampling temperature (0-2)
            max_tokens: Maximum tokens in response
            response_format: Optional response format (e.g., {"type": "json_object"})

        Returns:
            LLMResponse; ``finish_reason == "error"`` marks a failed request
        """
        ...

    async def close(self) -> None:
        """Release any network resources."""
        return None

    def _build_request(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float,
        max_tokens: int,
        response_format: dict[str, str] | None,
    ) -> dict[str, Any]:
        """Build the API request payload."""
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.model_dump(exclude_none=True) for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        if response_format:
            payload["response_format"] = response_format

        return payload
