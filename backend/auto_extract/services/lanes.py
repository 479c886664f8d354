"""Side-by-side extraction across the local and remote provider lanes."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any

from auto_extract.config import Settings
from auto_extract.extraction.pipeline import PipelineOutput, run_extraction_pipeline
from auto_extract.extraction.prompt import (
    RECOVERY_DIRECTIVE,
    build_system_prompt,
    build_user_prompt,
)
from auto_extract.extraction.providers import (
    AnthropicExtractionClient,
    ExtractionClient,
    OpenAIExtractionClient,
    ProviderError,
)
from auto_extract.extraction.validate import ExtractionValidationError
from auto_extract.result import Err, Ok, Result
from auto_extract.runtime.local_server import LlamaServerRuntime
from auto_extract.schemas.extraction import (
    ExtractionBundle,
    ExtractionDebug,
    ExtractionLaneResult,
    LaneId,
    LaneProvider,
    RuntimeInfo,
)
from auto_extract.services.extraction import extract_with_debug

logger = logging.getLogger(__name__)

LocalExtractor = Callable[[str, LlamaServerRuntime, Settings], Awaitable[ExtractionBundle]]
ClientFactory = Callable[[Settings], ExtractionClient]


@dataclass(frozen=True, slots=True)
class LaneSpec:
    lane_id: LaneId
    provider: LaneProvider


@dataclass(frozen=True, slots=True)
class RemoteCredential:
    setting: str
    env_var: str
    model_setting: str


@dataclass(frozen=True, slots=True)
class GenerationAttempt:
    name: str
    freeform: bool


LANES: tuple[LaneSpec, ...] = (
    LaneSpec("local-llama", "local"),
    LaneSpec("anthropic-haiku", "anthropic"),
    LaneSpec("openai-gpt5mini", "openai"),
)
_LANES_BY_ID = {lane.lane_id: lane for lane in LANES}

REMOTE_CREDENTIALS: dict[str, RemoteCredential] = {
    "anthropic": RemoteCredential("anthropic_api_key", "ANTHROPIC_API_KEY", "anthropic_model"),
    "openai": RemoteCredential("openai_api_key", "OPENAI_API_KEY", "openai_model"),
}

# Remote lanes try each attempt in order and stop at the first one that yields facts.
REMOTE_ATTEMPT_POLICY: tuple[GenerationAttempt, ...] = (
    GenerationAttempt("structured", freeform=False),
    GenerationAttempt("freeform", freeform=True),
)


def _openai_client(settings: Settings) -> ExtractionClient:
    return OpenAIExtractionClient(
        api_key=settings.openai_api_key or "",
        model=settings.openai_model,
        max_output_tokens=settings.remote_max_output_tokens,
        timeout_seconds=settings.remote_timeout_seconds,
    )


def _anthropic_client(settings: Settings) -> ExtractionClient:
    return AnthropicExtractionClient(
        api_key=settings.anthropic_api_key or "",
        model=settings.anthropic_model,
        max_output_tokens=settings.remote_max_output_tokens,
        timeout_seconds=settings.remote_timeout_seconds,
    )


DEFAULT_CLIENT_FACTORIES: dict[str, ClientFactory] = {
    "openai": _openai_client,
    "anthropic": _anthropic_client,
}


@dataclass(slots=True)
class _AttemptOutput:
    output: PipelineOutput
    raw_output: str
    user_prompt: str


class LaneOrchestrator:
    """Runs extraction lanes independently; a lane failure never escapes ``run_lane``."""

    def __init__(
        self,
        runtime: LlamaServerRuntime,
        settings: Settings,
        *,
        client_factories: Mapping[str, ClientFactory] | None = None,
        local_extractor: LocalExtractor = extract_with_debug,
    ) -> None:
        self.runtime = runtime
        self.settings = settings
        self.client_factories = dict(DEFAULT_CLIENT_FACTORIES if client_factories is None else client_factories)
        self.local_extractor = local_extractor

    async def compare(self, text: str) -> list[ExtractionLaneResult]:
        return list(await asyncio.gather(*(self.run_lane(text, lane.lane_id) for lane in LANES)))

    async def run_lane(self, text: str, lane_id: str) -> ExtractionLaneResult:
        lane = _LANES_BY_ID.get(lane_id)
        if lane is None:
            raise ValueError(f"Unknown extraction lane: {lane_id}")

        started = perf_counter()
        try:
            if lane.provider == "local":
                result = await self._run_local(lane, text)
            else:
                result = await self._run_remote(lane, text)
        except Exception as exc:
            logger.exception("auto_extract.lane_failed lane_id=%s", lane.lane_id)
            result = self._error(lane, self._model_for(lane), str(exc) or type(exc).__name__)
        duration_ms = round((perf_counter() - started) * 1000.0)

        result = result.model_copy(update={"duration_ms": duration_ms})
        logger.info(
            "auto_extract.lane_finished lane_id=%s status=%s duration_ms=%d",
            result.lane_id,
            result.status,
            duration_ms,
        )
        return result

    def _model_for(self, lane: LaneSpec) -> str:
        if lane.provider == "local":
            return Path(self.settings.model_path).name
        return str(getattr(self.settings, REMOTE_CREDENTIALS[lane.provider].model_setting))

    async def _run_local(self, lane: LaneSpec, text: str) -> ExtractionLaneResult:
        bundle = await self.local_extractor(text, self.runtime, self.settings)
        model = self._model_for(lane)
        if not bundle.extraction.facts and not bundle.extraction.entities:
            return self._error(lane, model, "Local lane produced no facts or entities.", debug=bundle.debug)
        return ExtractionLaneResult(
            lane_id=lane.lane_id,
            provider=lane.provider,
            model=model,
            status="ok",
            extraction=bundle.extraction,
            debug=bundle.debug,
        )

    async def _run_remote(self, lane: LaneSpec, text: str) -> ExtractionLaneResult:
        credential = REMOTE_CREDENTIALS[lane.provider]
        model = self._model_for(lane)
        if not getattr(self.settings, credential.setting):
            return ExtractionLaneResult(
                lane_id=lane.lane_id,
                provider=lane.provider,
                model=model,
                status="skipped",
                error_message=f"{credential.env_var} is not configured.",
            )

        client = self.client_factories[lane.provider](self.settings)
        system_prompt = build_system_prompt()
        failures: list[str] = []
        started = perf_counter()
        for index, attempt in enumerate(REMOTE_ATTEMPT_POLICY):
            outcome = await self._attempt(client, attempt, system_prompt, text)
            if isinstance(outcome, Err):
                failures.append(outcome.error)
                logger.warning(
                    "auto_extract.lane_attempt_failed lane_id=%s attempt=%s reason=%s",
                    lane.lane_id,
                    attempt.name,
                    outcome.error,
                )
                continue

            attempt_output = outcome.value
            debug = ExtractionDebug(
                input_text=text,
                prompt=f"{system_prompt}\n\n{attempt_output.user_prompt}",
                raw_model_output=attempt_output.raw_output,
                validated_before_segmentation=attempt_output.output.validated_before_segmentation,
                final_extraction=attempt_output.output.extraction,
                segmentation_trace=attempt_output.output.segmentation_trace,
                runtime=RuntimeInfo(
                    model_path=f"{lane.provider}:{model}",
                    server_mode=f"remote-{attempt.name}",
                    n_predict=self.settings.remote_max_output_tokens,
                    total_ms=round((perf_counter() - started) * 1000.0, 2),
                ),
                fallback_used=index > 0,
                errors=failures,
            )
            return ExtractionLaneResult(
                lane_id=lane.lane_id,
                provider=lane.provider,
                model=model,
                status="ok",
                extraction=attempt_output.output.extraction,
                debug=debug,
            )

        return self._error(lane, model, " | ".join(failures))

    async def _attempt(
        self,
        client: ExtractionClient,
        attempt: GenerationAttempt,
        system_prompt: str,
        text: str,
    ) -> Result[_AttemptOutput, str]:
        user_prompt = build_user_prompt(text)
        try:
            if attempt.freeform:
                user_prompt = f"{user_prompt}\n\n{RECOVERY_DIRECTIVE}"
                raw: Any = await client.generate_freeform(system_prompt, user_prompt)
            else:
                raw = await client.generate_structured(system_prompt, user_prompt)
            output = run_extraction_pipeline(text, raw)
        except (ProviderError, ExtractionValidationError) as exc:
            return Err(f"{attempt.name.capitalize()} attempt failed: {exc}")
        except Exception as exc:
            logger.exception("auto_extract.lane_attempt_error attempt=%s", attempt.name)
            return Err(f"{attempt.name.capitalize()} attempt failed: {type(exc).__name__}: {exc}")
        if not output.extraction.facts:
            return Err(f"{attempt.name.capitalize()} attempt failed: extraction contained no facts")
        raw_text = raw if isinstance(raw, str) else json.dumps(raw, ensure_ascii=False)
        return Ok(_AttemptOutput(output=output, raw_output=raw_text, user_prompt=user_prompt))

    @staticmethod
    def _error(
        lane: LaneSpec,
        model: str,
        message: str,
        *,
        debug: ExtractionDebug | None = None,
    ) -> ExtractionLaneResult:
        return ExtractionLaneResult(
            lane_id=lane.lane_id,
            provider=lane.provider,
            model=model,
            status="error",
            debug=debug,
            error_message=message,
        )
