"""Remote model clients used by the comparison lanes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import anthropic
import openai

from auto_extract.extraction.prompt import EXTRACTION_JSON_SCHEMA

_SCHEMA_NAME = "note_extraction"
_TOOL_DESCRIPTION = "Record the grounded extraction for the note."


class ProviderError(RuntimeError):
    """Raised when a remote provider call fails or returns an unusable response."""


class ExtractionClient(Protocol):
    """Protocol for remote clients that can produce extraction payloads."""

    model: str

    async def generate_structured(self, system_prompt: str, user_prompt: str) -> dict[str, Any] | str:
        """Return a schema-constrained payload (decoded object or JSON text)."""

    async def generate_freeform(self, system_prompt: str, user_prompt: str) -> str:
        """Return plain generated text expected to contain one JSON object."""


@dataclass(slots=True)
class OpenAIExtractionClient:
    """OpenAI Chat Completions client using strict JSON-schema output."""

    api_key: str
    model: str
    max_output_tokens: int = 4096
    timeout_seconds: float = 90.0
    _client: openai.AsyncOpenAI | None = field(default=None, init=False, repr=False)

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def generate_structured(self, system_prompt: str, user_prompt: str) -> str:
        return await self._complete(
            system_prompt,
            user_prompt,
            response_format={
                "type": "json_schema",
                "json_schema": {"name": _SCHEMA_NAME, "strict": True, "schema": EXTRACTION_JSON_SCHEMA},
            },
        )

    async def generate_freeform(self, system_prompt: str, user_prompt: str) -> str:
        return await self._complete(system_prompt, user_prompt)

    async def _complete(self, system_prompt: str, user_prompt: str, **params: Any) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                max_completion_tokens=self.max_output_tokens,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                **params,
            )
        except openai.APIStatusError as exc:
            raise ProviderError(f"OpenAI HTTP {exc.status_code}: {exc.message}") from exc
        except openai.APIError as exc:
            raise ProviderError(f"OpenAI request failed: {exc}") from exc

        if not response.choices:
            raise ProviderError("OpenAI returned no choices")
        message = response.choices[0].message
        refusal = getattr(message, "refusal", None)
        if isinstance(refusal, str) and refusal.strip():
            raise ProviderError(f"OpenAI refused extraction request: {refusal.strip()}")
        if not isinstance(message.content, str) or not message.content.strip():
            raise ProviderError("OpenAI response content is empty")
        return message.content


@dataclass(slots=True)
class AnthropicExtractionClient:
    """Anthropic Messages client; structured output is a forced tool call."""

    api_key: str
    model: str
    max_output_tokens: int = 4096
    timeout_seconds: float = 90.0
    _client: anthropic.AsyncAnthropic | None = field(default=None, init=False, repr=False)

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def generate_structured(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        response = await self._create(
            system_prompt,
            user_prompt,
            tools=[{"name": _SCHEMA_NAME, "description": _TOOL_DESCRIPTION, "input_schema": EXTRACTION_JSON_SCHEMA}],
            tool_choice={"type": "tool", "name": _SCHEMA_NAME},
        )
        for block in response.content:
            if block.type == "tool_use" and block.name == _SCHEMA_NAME:
                if not isinstance(block.input, dict):
                    raise ProviderError("Anthropic tool input is not an object")
                return block.input
        raise ProviderError(f"Anthropic response has no {_SCHEMA_NAME} tool call (stop_reason={response.stop_reason})")

    async def generate_freeform(self, system_prompt: str, user_prompt: str) -> str:
        response = await self._create(system_prompt, user_prompt)
        text = "".join(block.text for block in response.content if block.type == "text")
        if not text.strip():
            raise ProviderError("Anthropic response has no text content")
        return text

    async def _create(self, system_prompt: str, user_prompt: str, **params: Any) -> Any:
        try:
            return await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_output_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                **params,
            )
        except anthropic.APIStatusError as exc:
            raise ProviderError(f"Anthropic HTTP {exc.status_code}: {exc.message}") from exc
        except anthropic.APIError as exc:
            raise ProviderError(f"Anthropic request failed: {exc}") from exc
