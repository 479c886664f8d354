"""Request and response envelopes for the extraction API."""

from typing import Generic, TypeVar

from pydantic import BaseModel

from auto_extract.schemas.extraction import ExtractionLaneResult, WireModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Consistent JSON envelope for API responses."""

    data: T


class ExtractRequest(BaseModel):
    """Free-form note text to extract from."""

    text: str


class CompareResult(WireModel):
    lanes: list[ExtractionLaneResult]


class CompareLaneResult(WireModel):
    lane: ExtractionLaneResult
