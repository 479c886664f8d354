"""Local-model extraction with a debug bundle."""

from __future__ import annotations

import logging
from time import perf_counter

from auto_extract.config import Settings, get_settings
from auto_extract.extraction.pipeline import PipelineOutput, run_extraction_pipeline
from auto_extract.extraction.prompt import (
    RECOVERY_DIRECTIVE,
    build_prompt,
    build_system_prompt,
    build_user_prompt,
)
from auto_extract.extraction.validate import ExtractionValidationError
from auto_extract.runtime.local_server import LlamaServerRuntime
from auto_extract.schemas.extraction import ExtractionBundle, ExtractionDebug, RuntimeInfo

logger = logging.getLogger(__name__)


async def extract_with_debug(
    text: str,
    runtime: LlamaServerRuntime,
    settings: Settings | None = None,
) -> ExtractionBundle:
    """Run ``text`` through the local server and the full pipeline.

    Output that fails validation is retried once with the recovery directive
    appended to the user prompt; a second failure propagates with both
    messages.
    """

    settings = settings or get_settings()
    n_predict = settings.local_n_predict
    system_prompt = build_system_prompt()
    user_prompt = build_user_prompt(text)
    prompt = build_prompt(text)
    errors: list[str] = []
    fallback_used = False

    total_started = perf_counter()
    raw_output = await runtime.complete(system_prompt, user_prompt, n_predict=n_predict)
    try:
        output: PipelineOutput = run_extraction_pipeline(text, raw_output)
    except ExtractionValidationError as exc:
        errors.append(str(exc))
        fallback_used = True
        logger.warning("auto_extract.local_recovery_retry reason=%s", exc)
        recovery_prompt = f"{user_prompt}\n\n{RECOVERY_DIRECTIVE}"
        prompt = f"{system_prompt}\n\n{recovery_prompt}"
        raw_output = await runtime.complete(system_prompt, recovery_prompt, n_predict=n_predict)
        try:
            output = run_extraction_pipeline(text, raw_output)
        except ExtractionValidationError as retry_exc:
            raise ExtractionValidationError(f"{exc} | Recovery failed: {retry_exc}") from retry_exc
    total_ms = (perf_counter() - total_started) * 1000.0

    logger.info(
        "auto_extract.local_extraction server_mode=%s facts=%d entities=%d segments=%d fallback_used=%s total_ms=%.2f",
        runtime.server_mode,
        len(output.extraction.facts),
        len(output.extraction.entities),
        len(output.extraction.segments),
        fallback_used,
        total_ms,
    )
    debug = ExtractionDebug(
        input_text=text,
        prompt=prompt,
        raw_model_output=raw_output,
        validated_before_segmentation=output.validated_before_segmentation,
        final_extraction=output.extraction,
        segmentation_trace=output.segmentation_trace,
        runtime=RuntimeInfo(
            model_path=str(runtime.config.model_path),
            server_mode=runtime.server_mode,
            n_predict=n_predict,
            total_ms=round(total_ms, 2),
        ),
        fallback_used=fallback_used,
        errors=errors,
    )
    return ExtractionBundle(extraction=output.extraction, debug=debug)
