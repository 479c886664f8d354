"""Unit tests for lane orchestration and the local extraction service."""

from __future__ import annotations

import json
import unittest
from pathlib import Path

from auto_extract.config import Settings
from auto_extract.extraction.prompt import RECOVERY_DIRECTIVE
from auto_extract.extraction.providers import ProviderError
from auto_extract.extraction.validate import ExtractionValidationError
from auto_extract.runtime.errors import LocalRuntimeError
from auto_extract.runtime.local_server import LocalRuntimeConfig
from auto_extract.services.extraction import extract_with_debug
from auto_extract.services.lanes import LaneOrchestrator

TEXT = "I called support. Egle was driving."


def _payload(*, with_facts: bool = True) -> dict:
    egle_start = TEXT.index("Egle")
    facts = []
    if with_facts:
        facts = [
            {
                "id": "fact_call",
                "ownerEntityId": "owner_1",
                "perspective": "uncertain",
                "predicate": "called",
                "objectText": "support",
                "evidenceStart": 0,
                "evidenceEnd": len("I called support."),
                "confidence": 0.9,
            },
            {
                "id": "fact_drive",
                "ownerEntityId": "owner_2",
                "perspective": "uncertain",
                "predicate": "was driving",
                "evidenceStart": egle_start,
                "evidenceEnd": len(TEXT),
                "confidence": 0.8,
            },
        ]
    return {
        "title": "Support call",
        "noteType": "personal",
        "summary": "Called support while Egle drove.",
        "language": "en",
        "date": None,
        "sentiment": "neutral",
        "emotions": [],
        "entities": [
            {
                "id": "ent_egle",
                "name": "Egle",
                "type": "person",
                "nameStart": egle_start,
                "nameEnd": egle_start + 4,
                "confidence": 0.9,
            }
        ],
        "facts": facts,
        "relations": [],
        "groups": [],
    }


def _settings(**overrides) -> Settings:
    values = {
        "openai_api_key": None,
        "anthropic_api_key": None,
        "model_path": Path("/models/gemma.gguf"),
        "local_n_predict": 512,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class _StubRuntime:
    """Stands in for the llama-server runtime with scripted completions."""

    server_mode = "cpu"

    def __init__(self, outputs: list) -> None:
        self.outputs = list(outputs)
        self.config = LocalRuntimeConfig(server_path=Path("/bin/llama-server"), model_path=Path("/models/gemma.gguf"))
        self.calls: list[tuple[str, str, int | None]] = []

    async def complete(self, system_prompt: str, user_prompt: str, *, n_predict: int | None = None) -> str:
        self.calls.append((system_prompt, user_prompt, n_predict))
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return output


class _StubClient:
    def __init__(self, structured, freeform=None) -> None:
        self.model = "stub-model"
        self.structured = structured
        self.freeform = freeform
        self.freeform_prompts: list[str] = []

    async def generate_structured(self, system_prompt: str, user_prompt: str):
        if isinstance(self.structured, Exception):
            raise self.structured
        return self.structured

    async def generate_freeform(self, system_prompt: str, user_prompt: str) -> str:
        self.freeform_prompts.append(user_prompt)
        if isinstance(self.freeform, Exception):
            raise self.freeform
        return self.freeform


def _factories(client: _StubClient) -> dict:
    return {"openai": lambda settings: client, "anthropic": lambda settings: client}


class LocalExtractionServiceTests(unittest.IsolatedAsyncioTestCase):
    async def test_bundle_carries_debug_details(self) -> None:
        runtime = _StubRuntime([json.dumps(_payload())])

        bundle = await extract_with_debug(TEXT, runtime, _settings())

        self.assertEqual(len(bundle.extraction.facts), 2)
        self.assertEqual(bundle.debug.input_text, TEXT)
        self.assertTrue(bundle.debug.prompt.endswith(f"Input:\n{TEXT}"))
        self.assertEqual(bundle.debug.runtime.server_mode, "cpu")
        self.assertEqual(bundle.debug.runtime.n_predict, 512)
        self.assertEqual(bundle.debug.runtime.model_path, "/models/gemma.gguf")
        self.assertFalse(bundle.debug.fallback_used)
        self.assertEqual(bundle.debug.final_extraction, bundle.extraction)
        self.assertEqual(runtime.calls[0][2], 512)

    async def test_invalid_output_is_retried_with_recovery_directive(self) -> None:
        runtime = _StubRuntime(["not json at all", json.dumps(_payload())])

        bundle = await extract_with_debug(TEXT, runtime, _settings())

        self.assertTrue(bundle.debug.fallback_used)
        self.assertEqual(len(bundle.debug.errors), 1)
        self.assertTrue(runtime.calls[1][1].endswith(RECOVERY_DIRECTIVE))
        self.assertTrue(bundle.debug.prompt.endswith(RECOVERY_DIRECTIVE))
        self.assertIn(f"Input:\n{TEXT}", bundle.debug.prompt)

    async def test_second_invalid_output_raises(self) -> None:
        runtime = _StubRuntime(["not json", "still not json"])

        with self.assertRaises(ExtractionValidationError) as ctx:
            await extract_with_debug(TEXT, runtime, _settings())

        self.assertIn("Recovery failed", str(ctx.exception))


class LaneOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_credentials_skip_remote_lanes_while_local_succeeds(self) -> None:
        orchestrator = LaneOrchestrator(_StubRuntime([json.dumps(_payload())]), _settings())

        lanes = await orchestrator.compare(TEXT)

        statuses = {lane.lane_id: lane.status for lane in lanes}
        self.assertEqual(
            statuses,
            {"local-llama": "ok", "anthropic-haiku": "skipped", "openai-gpt5mini": "skipped"},
        )
        by_id = {lane.lane_id: lane for lane in lanes}
        self.assertIn("ANTHROPIC_API_KEY", by_id["anthropic-haiku"].error_message)
        self.assertIn("OPENAI_API_KEY", by_id["openai-gpt5mini"].error_message)
        self.assertEqual(by_id["local-llama"].model, "gemma.gguf")
        self.assertTrue(all(lane.duration_ms is not None for lane in lanes))

    async def test_local_failure_does_not_affect_remote_lane(self) -> None:
        client = _StubClient(_payload())
        orchestrator = LaneOrchestrator(
            _StubRuntime([LocalRuntimeError("llama-server binary is missing")]),
            _settings(openai_api_key="sk-test"),
            client_factories=_factories(client),
        )

        lanes = {lane.lane_id: lane for lane in await orchestrator.compare(TEXT)}

        self.assertEqual(lanes["local-llama"].status, "error")
        self.assertIn("binary is missing", lanes["local-llama"].error_message)
        self.assertEqual(lanes["openai-gpt5mini"].status, "ok")
        self.assertEqual(lanes["openai-gpt5mini"].provider, "openai")
        self.assertEqual(lanes["anthropic-haiku"].status, "skipped")

    async def test_structured_error_falls_back_to_freeform(self) -> None:
        client = _StubClient(ProviderError("OpenAI HTTP 500: upstream"), "```json\n" + json.dumps(_payload()) + "\n```")
        orchestrator = LaneOrchestrator(
            _StubRuntime([]),
            _settings(openai_api_key="sk-test"),
            client_factories=_factories(client),
        )

        lane = await orchestrator.run_lane(TEXT, "openai-gpt5mini")

        self.assertEqual(lane.status, "ok")
        self.assertTrue(lane.debug.fallback_used)
        self.assertIn("Structured attempt failed", lane.debug.errors[0])
        self.assertTrue(client.freeform_prompts[0].endswith(RECOVERY_DIRECTIVE))
        self.assertEqual(lane.debug.runtime.server_mode, "remote-freeform")

    async def test_structured_result_without_facts_falls_back(self) -> None:
        client = _StubClient(_payload(with_facts=False), json.dumps(_payload()))
        orchestrator = LaneOrchestrator(
            _StubRuntime([]),
            _settings(anthropic_api_key="sk-ant-test"),
            client_factories=_factories(client),
        )

        lane = await orchestrator.run_lane(TEXT, "anthropic-haiku")

        self.assertEqual(lane.status, "ok")
        self.assertIn("no facts", lane.debug.errors[0])
        self.assertEqual(len(lane.extraction.facts), 2)

    async def test_both_attempts_failing_concatenates_messages(self) -> None:
        client = _StubClient(ProviderError("structured exploded"), "no json here")
        orchestrator = LaneOrchestrator(
            _StubRuntime([]),
            _settings(anthropic_api_key="sk-ant-test"),
            client_factories=_factories(client),
        )

        lane = await orchestrator.run_lane(TEXT, "anthropic-haiku")

        self.assertEqual(lane.status, "error")
        self.assertIn("structured exploded", lane.error_message)
        self.assertIn("Freeform attempt failed", lane.error_message)
        self.assertIsNone(lane.extraction)

    async def test_unexpected_client_exception_still_reaches_freeform(self) -> None:
        client = _StubClient(TypeError("bad SDK response"), json.dumps(_payload()))
        orchestrator = LaneOrchestrator(
            _StubRuntime([]),
            _settings(openai_api_key="sk-test"),
            client_factories=_factories(client),
        )

        with self.assertLogs("auto_extract.services.lanes", level="ERROR"):
            lane = await orchestrator.run_lane(TEXT, "openai-gpt5mini")

        self.assertEqual(lane.status, "ok")
        self.assertIn("TypeError", lane.debug.errors[0])

    async def test_unknown_lane_is_rejected(self) -> None:
        orchestrator = LaneOrchestrator(_StubRuntime([]), _settings())

        with self.assertRaises(ValueError):
            await orchestrator.run_lane(TEXT, "mystery-lane")


if __name__ == "__main__":
    unittest.main()
