"""Pipeline from raw model output to a resolved, segmented extraction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from auto_extract.extraction.groups import normalize_groups
from auto_extract.extraction.ownership import remove_collective_driving_conflicts, resolve_ownership
from auto_extract.extraction.segmentation import segment_extraction
from auto_extract.extraction.todos import enrich_todos
from auto_extract.extraction.validate import parse_and_validate_extraction
from auto_extract.schemas.extraction import Extraction


@dataclass(slots=True)
class PipelineOutput:
    """Final extraction plus the intermediate state kept for debugging."""

    validated_before_segmentation: Extraction
    extraction: Extraction
    segmentation_trace: list[str] = field(default_factory=list)


def resolve_extraction(extraction: Extraction, text: str) -> Extraction:
    """Ownership resolution, collective-driving refinement, todo enrichment, and grouping."""

    resolved = resolve_ownership(extraction, text)
    resolved = remove_collective_driving_conflicts(resolved, text)
    resolved = enrich_todos(resolved, text)
    return normalize_groups(resolved, text)


def post_process_extraction(extraction: Extraction, text: str) -> Extraction:
    resolved = resolve_extraction(extraction, text)
    segmented, _ = segment_extraction(resolved, text)
    return segmented


def run_extraction_pipeline(text: str, raw_output: str | dict[str, Any]) -> PipelineOutput:
    """Validate raw model output against ``text`` and run every post-processing stage."""

    validated = parse_and_validate_extraction(text, raw_output)
    resolved = resolve_extraction(validated, text)
    segmented, trace = segment_extraction(resolved, text)
    return PipelineOutput(
        validated_before_segmentation=resolved,
        extraction=segmented,
        segmentation_trace=trace,
    )
