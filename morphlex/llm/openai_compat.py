"""OpenAI-compatible chat completions adapter.

Works with any provider exposing ``POST /chat/completions`` in the OpenAI
shape (DeepSeek, Moonshot, OpenAI, local gateways). Base URL, key and model
come from settings unless passed explicitly.
"""

from __future__ import annotations

import logging
import time

import httpx

from morphlex.config import get_settings
from morphlex.schemas import LLMMessage, LLMResponse
from morphlex.llm.base import LLMAdapter


logger = logging.getLogger(__name__)


class OpenAICompatAdapter(LLMAdapter):
    """Chat completion adapter over an OpenAI-compatible HTTP endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.llm_api_key
        self.base_url = base_url or settings.llm_base_url
        self.default_model = model or settings.llm_model
        self.timeout = timeout if timeout is not None else settings.llm_timeout_seconds

        if not self.api_key:
            raise ValueError("LLM API key not configured (set LLM_API_KEY)")

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return httpx.URL(self.base_url).host or "openai-compatible"

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        """Send chat completion request to the configured endpoint."""
        model = model or self.default_model

        payload = self._build_request(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format=response_format,
        )

        start_time = time.perf_counter()

        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"{self.provider_name} returned {e.response.status_code}")
            return LLMResponse(
                content=None,
                model=model,
                finish_reason="error",
                raw_response={"error": str(e), "status_code": e.response.status_code},
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"{self.provider_name} request failed: {e}")
            return LLMResponse(
                content=None,
                model=model,
                finish_reason="error",
                raw_response={"error": str(e)},
            )

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(f"{self.provider_name}/{model} responded in {latency_ms}ms")

        choices = data.get("choices") if isinstance(data, dict) else None
        choice = choices[0] if isinstance(choices, list) and choices else None
        message = choice.get("message") if isinstance(choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None

        if content is not None and not isinstance(content, str):
            content = None
        if content is None:
            logger.warning(f"{self.provider_name} returned no message content")
            return LLMResponse(
                content=None,
                model=model,
                finish_reason="error",
                raw_response={"error": "Response carried no message content", "body": data},
            )

        usage = data.get("usage")
        return LLMResponse(
            content=content,
            model=data.get("model") if isinstance(data.get("model"), str) else model,
            usage=usage if isinstance(usage, dict) else {},
            finish_reason=choice.get("finish_reason") if isinstance(choice.get("finish_reason"), str) else None,
            raw_response=data,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
