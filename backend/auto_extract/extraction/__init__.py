"""Extraction pipeline: grounding, ownership, todo enrichment, and segmentation."""

from auto_extract.extraction.pipeline import PipelineOutput, post_process_extraction, run_extraction_pipeline
from auto_extract.extraction.validate import (
    ExtractionValidationError,
    parse_and_validate_extraction,
    validate_extraction,
    validate_legacy_extraction,
    validate_payload,
)

__all__ = [
    "ExtractionValidationError",
    "PipelineOutput",
    "parse_and_validate_extraction",
    "post_process_extraction",
    "run_extraction_pipeline",
    "validate_extraction",
    "validate_legacy_extraction",
    "validate_payload",
]
