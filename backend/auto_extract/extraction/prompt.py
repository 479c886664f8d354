"""Prompt text and structured-output schema for note extraction."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

EXTRACTION_PROMPT_VERSION = "extraction.v2"
_PROMPT_FILES: dict[str, Path] = {
    "extraction.v2": Path(__file__).resolve().parent / "prompts" / "extraction_v2.txt",
}

RECOVERY_DIRECTIVE = (
    "Previous structured attempt failed. Return one complete JSON object only, "
    "with every required array present (use [] when empty). Do not omit required arrays."
)


class PromptLoadError(RuntimeError):
    """Raised when the registered prompt file is missing or empty."""


@lru_cache(maxsize=8)
def build_system_prompt(version: str = EXTRACTION_PROMPT_VERSION) -> str:
    prompt_file = _PROMPT_FILES.get(version)
    if prompt_file is None:
        raise PromptLoadError(f"Extraction prompt version is not registered: {version}")
    try:
        prompt_text = prompt_file.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise PromptLoadError(f"Failed to load extraction prompt file: {prompt_file}") from exc
    if not prompt_text:
        raise PromptLoadError(f"Extraction prompt file is empty: {prompt_file}")
    return prompt_text


def build_user_prompt(text: str) -> str:
    return "\n".join(["Input:", text])


def build_prompt(text: str) -> str:
    """Single-string prompt for completion-style local inference."""

    return "\n".join([build_system_prompt(), "", build_user_prompt(text)])


def _nullable(schema_type: str) -> dict[str, Any]:
    return {"type": [schema_type, "null"]}


def _object(properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
        "required": list(properties),
    }


_SPAN_REQUIRED = {
    "evidenceStart": {"type": "integer"},
    "evidenceEnd": {"type": "integer"},
    "evidenceText": {"type": "string"},
}
_SPAN_OPTIONAL = {
    "evidenceStart": _nullable("integer"),
    "evidenceEnd": _nullable("integer"),
    "evidenceText": _nullable("string"),
}

EXTRACTION_JSON_SCHEMA: dict[str, Any] = _object(
    {
        "title": {"type": "string"},
        "noteType": {"type": "string"},
        "summary": {"type": "string"},
        "language": {"type": "string"},
        "date": _nullable("string"),
        "sentiment": {"type": "string", "enum": ["positive", "negative", "neutral", "varied"]},
        "emotions": {
            "type": "array",
            "items": _object(
                {
                    "emotion": {"type": "string"},
                    "intensity": {"type": "integer", "enum": [1, 2, 3, 4, 5]},
                }
            ),
        },
        "entities": {
            "type": "array",
            "items": _object(
                {
                    "id": {"type": "string"},
                    "name": {"type": "string"},
                    "type": {"type": "string", "enum": ["person", "org", "tool", "place", "concept", "event"]},
                    "nameStart": {"type": "integer"},
                    "nameEnd": {"type": "integer"},
                    **_SPAN_OPTIONAL,
                    "context": _nullable("string"),
                    "confidence": {"type": "number"},
                }
            ),
        },
        "facts": {
            "type": "array",
            "items": _object(
                {
                    "id": {"type": "string"},
                    "ownerEntityId": {"type": "string"},
                    "perspective": {"type": "string", "enum": ["self", "other", "uncertain"]},
                    "subjectEntityId": _nullable("string"),
                    "predicate": {"type": "string"},
                    "objectEntityId": _nullable("string"),
                    "objectText": _nullable("string"),
                    **_SPAN_REQUIRED,
                    "confidence": {"type": "number"},
                }
            ),
        },
        "relations": {
            "type": "array",
            "items": _object(
                {
                    "fromEntityId": {"type": "string"},
                    "toEntityId": {"type": "string"},
                    "type": {"type": "string"},
                    **_SPAN_OPTIONAL,
                    "confidence": {"type": "number"},
                }
            ),
        },
        "todos": {
            "type": "array",
            "items": _object(
                {
                    "id": {"type": "string"},
                    "description": {"type": "string"},
                    "assigneeEntityId": _nullable("string"),
                    **_SPAN_REQUIRED,
                    "confidence": {"type": "number"},
                }
            ),
        },
        "groups": {
            "type": "array",
            "items": _object(
                {
                    "name": {"type": "string"},
                    "entityIds": {"type": "array", "items": {"type": "string"}},
                    "factIds": {"type": "array", "items": {"type": "string"}},
                }
            ),
        },
    }
)
