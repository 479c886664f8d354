"""Canonical extraction shapes shared by the pipeline, lanes, and API."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Sentiment = Literal["positive", "negative", "neutral", "varied"]
EntityType = Literal["person", "org", "tool", "place", "concept", "event"]
Perspective = Literal["self", "other", "uncertain"]
LaneId = Literal["local-llama", "anthropic-haiku", "openai-gpt5mini"]
LaneProvider = Literal["local", "anthropic", "openai"]
LaneStatus = Literal["ok", "error", "skipped"]


class WireModel(BaseModel):
    """Immutable model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class Emotion(WireModel):
    emotion: str
    intensity: int = Field(ge=1, le=5)


class Entity(WireModel):
    """Entity grounded by its name span."""

    id: str
    name: str
    type: EntityType
    name_start: int
    name_end: int
    evidence_start: int | None = None
    evidence_end: int | None = None
    context: str | None = None
    confidence: float


class Fact(WireModel):
    """Owned assertion grounded by its evidence span."""

    id: str
    owner_entity_id: str
    perspective: Perspective
    subject_entity_id: str | None = None
    predicate: str
    object_entity_id: str | None = None
    object_text: str | None = None
    evidence_start: int
    evidence_end: int
    confidence: float
    segment_id: str | None = None


class Relation(WireModel):
    from_entity_id: str
    to_entity_id: str
    type: str
    evidence_start: int | None = None
    evidence_end: int | None = None
    confidence: float


class Todo(WireModel):
    id: str
    description: str
    assignee_entity_id: str | None = None
    evidence_start: int
    evidence_end: int
    confidence: float


class Group(WireModel):
    name: str
    entity_ids: list[str] = Field(default_factory=list)
    fact_ids: list[str] = Field(default_factory=list)


class Segment(WireModel):
    """Derived, sentence-aligned region of the source text."""

    id: str
    start: int
    end: int
    sentiment: Sentiment
    summary: str
    entity_ids: list[str] = Field(default_factory=list)
    fact_ids: list[str] = Field(default_factory=list)
    relation_indexes: list[int] = Field(default_factory=list)


class Extraction(WireModel):
    """Root extraction artifact."""

    title: str = Field(max_length=25)
    note_type: str
    summary: str
    language: str
    date: str | None = None
    sentiment: Sentiment
    emotions: list[Emotion] = Field(default_factory=list)
    entities: list[Entity] = Field(default_factory=list)
    facts: list[Fact] = Field(default_factory=list)
    relations: list[Relation] = Field(default_factory=list)
    todos: list[Todo] = Field(default_factory=list)
    groups: list[Group] = Field(default_factory=list)
    segments: list[Segment] = Field(default_factory=list)


class LegacyItem(WireModel):
    label: str
    value: str
    start: int
    end: int
    confidence: float


class LegacyGroup(WireModel):
    name: str
    item_indexes: list[int] = Field(default_factory=list)


class LegacyExtraction(WireModel):
    """Single-array extraction shape."""

    title: str = Field(max_length=25)
    memory: str | None = None
    items: list[LegacyItem] = Field(default_factory=list)
    groups: list[LegacyGroup] = Field(default_factory=list)


class RuntimeInfo(WireModel):
    model_path: str
    server_mode: str
    n_predict: int
    total_ms: float


class ExtractionDebug(WireModel):
    """Inspection bundle handed to storage alongside the final extraction."""

    input_text: str
    prompt: str
    raw_model_output: str
    validated_before_segmentation: Extraction | None = None
    final_extraction: Extraction | None = None
    segmentation_trace: list[str] = Field(default_factory=list)
    runtime: RuntimeInfo
    fallback_used: bool = False
    errors: list[str] = Field(default_factory=list)


class ExtractionBundle(WireModel):
    extraction: Extraction
    debug: ExtractionDebug


class ExtractionLaneResult(WireModel):
    """Outcome of one provider lane."""

    lane_id: LaneId
    provider: LaneProvider
    model: str
    status: LaneStatus
    duration_ms: int | None = None
    extraction: Extraction | None = None
    debug: ExtractionDebug | None = None
    error_message: str | None = None

