"""Extraction routes."""

from fastapi import APIRouter, Depends, HTTPException, Request

from auto_extract.config import Settings, get_settings
from auto_extract.extraction.validate import ExtractionValidationError
from auto_extract.runtime.errors import LocalRuntimeError
from auto_extract.runtime.local_server import LlamaServerRuntime
from auto_extract.schemas.api import ApiResponse, CompareLaneResult, CompareResult, ExtractRequest
from auto_extract.schemas.extraction import ExtractionBundle, LaneId
from auto_extract.services.extraction import extract_with_debug
from auto_extract.services.lanes import LaneOrchestrator


router = APIRouter(prefix="/extract")


def get_runtime(request: Request) -> LlamaServerRuntime:
    return request.app.state.runtime


def get_orchestrator(request: Request) -> LaneOrchestrator:
    return request.app.state.orchestrator


def _require_text(payload: ExtractRequest) -> str:
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=422, detail="Text must not be empty.")
    return text


@router.post("", response_model=ApiResponse[ExtractionBundle])
async def extract(
    payload: ExtractRequest,
    runtime: LlamaServerRuntime = Depends(get_runtime),
    settings: Settings = Depends(get_settings),
) -> ApiResponse[ExtractionBundle]:
    """Extract from note text with the local model and return the debug bundle."""

    text = _require_text(payload)
    try:
        bundle = await extract_with_debug(text, runtime, settings)
    except LocalRuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ExtractionValidationError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ApiResponse(data=bundle)


@router.post("/compare", response_model=ApiResponse[CompareResult])
async def compare(
    payload: ExtractRequest,
    orchestrator: LaneOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[CompareResult]:
    """Run every lane concurrently and report per-lane outcomes."""

    lanes = await orchestrator.compare(_require_text(payload))
    return ApiResponse(data=CompareResult(lanes=lanes))


@router.post("/compare/{lane_id}", response_model=ApiResponse[CompareLaneResult])
async def compare_lane(
    lane_id: LaneId,
    payload: ExtractRequest,
    orchestrator: LaneOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[CompareLaneResult]:
    lane = await orchestrator.run_lane(_require_text(payload), lane_id)
    return ApiResponse(data=CompareLaneResult(lane=lane))
