"""Script and plan generation backed by an LLM.

The executor depends only on the ``ScriptGenerator`` protocol; ``LLMGenerator``
is the concrete implementation used by the API and CLI. Every request is
single-shot: failures raise ``GeneratorError`` and are never retried here.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Protocol

from morphlex.config import get_settings
from morphlex.errors import GeneratorError, PlanParseError
from morphlex.llm.base import LLMAdapter
from morphlex.llm.openai_compat import OpenAICompatAdapter
from morphlex.schemas import LLMMessage, Plan
from morphlex.agent.prompts import (
    SYSTEM_PROMPT,
    format_plan_prompt,
    format_transform_prompt,
    format_corrected_transform_prompt,
)


logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[\w-]*\s*\n(.*?)\n?```\s*$", re.DOTALL)


class ScriptGenerator(Protocol):
    """Contract the executor relies on for transform scripts."""

    async def generate_transform(self, source_content: str, goal_description: str) -> str:
        ...

    async def generate_corrected_transform(
        self,
        original_content: str,
        failed_script_text: str,
        failure_output: str,
    ) -> str:
        ...


def _strip_fences(text: str) -> str:
    """Drop a surrounding markdown code fence, if the model added one."""
    text = text.strip()
    match = _FENCE_RE.match(text)
    return match.group(1).strip() if match else text


class LLMGenerator:
    """Generates plans and jscodeshift transforms through an ``LLMAdapter``."""

    def __init__(self, adapter: LLMAdapter, temperature: float | None = None):
        self._adapter = adapter
        self._temperature = (
            temperature if temperature is not None else get_settings().llm_temperature
        )

    async def _complete(self, prompt: str, json_mode: bool = False) -> str:
        messages = [
            LLMMessage(role="system", content=SYSTEM_PROMPT),
            LLMMessage(role="user", content=prompt),
        ]
        response = await self._adapter.chat_completion(
            messages=messages,
            temperature=self._temperature,
            response_format={"type": "json_object"} if json_mode else None,
        )

        if response.finish_reason == "error":
            error = (response.raw_response or {}).get("error", "unknown error")
            raise GeneratorError(f"Generator request failed: {error}")
        if not response.content or not response.content.strip():
            raise GeneratorError("Generator returned an empty response")

        return _strip_fences(response.content)

    async def generate_plan(self, source_content: str, goal: str) -> Plan:
        """Ask for a refactoring plan and parse it into steps."""
        content = await self._complete(format_plan_prompt(source_content, goal), json_mode=True)

        try:
            plan = Plan.from_payload(json.loads(content))
        except json.JSONDecodeError as e:
            raise GeneratorError(f"Failed to parse plan: {e}") from e
        except PlanParseError as e:
            raise GeneratorError(f"Generated plan is invalid: {e}") from e

        logger.info(f"Generated plan with {len(plan.steps)} steps")
        return plan

    async def generate_transform(self, source_content: str, goal_description: str) -> str:
        """Ask for a jscodeshift transform achieving ``goal_description``."""
        return await self._complete(format_transform_prompt(source_content, goal_description))

    async def generate_corrected_transform(
        self,
        original_content: str,
        failed_script_text: str,
        failure_output: str,
    ) -> str:
        """Ask for a transform that fixes ``failed_script_text`` given the test error."""
        logger.info("Requesting corrected transform")
        return await self._complete(
            format_corrected_transform_prompt(original_content, failed_script_text, failure_output)
        )

    async def close(self) -> None:
        await self._adapter.close()


class UnavailableGenerator:
    """Stands in when no LLM is configured; any generation request fails.

    Plans without Transform steps still run to completion.
    """

    def __init__(self, reason: str):
        self.reason = reason

    async def generate_plan(self, source_content: str, goal: str) -> Plan:
        raise GeneratorError(self.reason)

    async def generate_transform(self, source_content: str, goal_description: str) -> str:
        raise GeneratorError(self.reason)

    async def generate_corrected_transform(
        self,
        original_content: str,
        failed_script_text: str,
        failure_output: str,
    ) -> str:
        raise GeneratorError(self.reason)

    async def close(self) -> None:
        return None


# Singleton instance
_generator: LLMGenerator | None = None


def get_generator() -> LLMGenerator:
    """Get the shared LLM generator, creating its HTTP client on first use.

    Raises:
        ValueError: No LLM API key is configured
    """
    global _generator
    if _generator is None:
        _generator = LLMGenerator(OpenAICompatAdapter())
    return _generator


async def close_generator() -> None:
    """Close the shared generator's HTTP client, if one was created."""
    global _generator
    if _generator is not None:
        await _generator.close()
        _generator = None
