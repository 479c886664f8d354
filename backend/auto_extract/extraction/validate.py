"""Parse untrusted model output and reduce it to a grounded extraction."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from auto_extract.schemas.extraction import (
    Emotion,
    Entity,
    Extraction,
    Fact,
    Group,
    LegacyExtraction,
    LegacyGroup,
    LegacyItem,
    Relation,
    Segment,
    Todo,
)

logger = logging.getLogger(__name__)

RAW_OUTPUT_EXCERPT_CHARS = 1200
_ENTITY_TYPES = {"person", "org", "tool", "place", "concept", "event"}
_SENTIMENT_ALIASES = {"mixed": "varied"}
_SENTIMENTS = {"positive", "negative", "neutral", "varied"}
_PERSPECTIVES = {"self", "other", "uncertain"}

PayloadShape = Literal["legacy", "v2"]


class ExtractionValidationError(ValueError):
    """Raised when model output cannot be reduced to a valid extraction."""


def find_first_json_object(value: str) -> str | None:
    """Return the first balanced top-level ``{...}`` block, ignoring braces inside strings."""

    start_index = value.find("{")
    if start_index < 0:
        return None

    depth = 0
    in_string = False
    escaping = False
    for index in range(start_index, len(value)):
        ch = value[index]
        if in_string:
            if escaping:
                escaping = False
            elif ch == "\\":
                escaping = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return value[start_index : index + 1]
    return None


def parse_model_output(raw_output: str) -> Any:
    """Decode a model response that may wrap its JSON object in prose or markdown."""

    trimmed = raw_output.strip()
    excerpt = trimmed[:RAW_OUTPUT_EXCERPT_CHARS]
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError as exc:
        candidate = find_first_json_object(trimmed)
        if candidate is None:
            raise ExtractionValidationError(
                f"Model output does not contain a balanced JSON object: {exc}. Raw output: {excerpt}"
            ) from exc
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as inner:
            raise ExtractionValidationError(
                f"Model output is not valid JSON: {inner}. Raw output: {excerpt}"
            ) from inner


def find_closest_match_start(text: str, value: str, hint_start: int) -> int:
    """Return the occurrence of ``value`` nearest to ``hint_start`` (first wins ties), or -1."""

    best = -1
    best_distance = 0
    from_index = 0
    while from_index <= len(text):
        index = text.find(value, from_index)
        if index < 0:
            break
        distance = abs(index - hint_start)
        if best < 0 or distance < best_distance:
            best = index
            best_distance = distance
        from_index = index + 1
    return best


def ground_span(text: str, value: str, start: int, end: int) -> tuple[int, int] | None:
    """Return a span whose substring equals ``value``, repairing a near miss when possible."""

    if not value:
        return None
    if 0 <= start < end <= len(text) and text[start:end] == value:
        return start, end
    repaired = find_closest_match_start(text, value, start)
    if repaired < 0:
        return None
    return repaired, repaired + len(value)


def _require_number(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be a finite number")
    return value


Confidence = Annotated[float, BeforeValidator(_require_number), Field(ge=0, le=1, allow_inf_nan=False)]


class _RawModel(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class _RawEmotion(_RawModel):
    emotion: StrictStr
    intensity: StrictInt

    @field_validator("intensity")
    @classmethod
    def _clamp_intensity(cls, value: int) -> int:
        return max(1, min(5, value))


class _RawEntity(_RawModel):
    id: StrictStr
    name: StrictStr
    type: StrictStr
    name_start: StrictInt
    name_end: StrictInt
    evidence_start: StrictInt | None = None
    evidence_end: StrictInt | None = None
    evidence_text: StrictStr | None = None
    context: StrictStr | None = None
    confidence: Confidence

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return lowered if lowered in _ENTITY_TYPES else "concept"
        return value


class _RawFact(_RawModel):
    id: StrictStr
    owner_entity_id: StrictStr = ""
    perspective: StrictStr = "uncertain"
    subject_entity_id: StrictStr | None = None
    predicate: StrictStr
    object_entity_id: StrictStr | None = None
    object_text: StrictStr | None = None
    evidence_start: StrictInt
    evidence_end: StrictInt
    evidence_text: StrictStr | None = None
    confidence: Confidence

    @field_validator("perspective", mode="before")
    @classmethod
    def _normalize_perspective(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return lowered if lowered in _PERSPECTIVES else "uncertain"
        return value


class _RawRelation(_RawModel):
    from_entity_id: StrictStr
    to_entity_id: StrictStr
    type: StrictStr
    evidence_start: StrictInt | None = None
    evidence_end: StrictInt | None = None
    evidence_text: StrictStr | None = None
    confidence: Confidence


class _RawTodo(_RawModel):
    id: StrictStr
    description: StrictStr
    assignee_entity_id: StrictStr | None = None
    evidence_start: StrictInt
    evidence_end: StrictInt
    evidence_text: StrictStr | None = None
    confidence: Confidence


class _RawGroup(_RawModel):
    name: StrictStr
    entity_ids: list[StrictStr] = Field(default_factory=list)
    fact_ids: list[StrictStr] = Field(default_factory=list)


class _RawSegment(_RawModel):
    id: StrictStr
    start: StrictInt
    end: StrictInt
    sentiment: StrictStr = "neutral"
    summary: StrictStr = ""
    entity_ids: list[StrictStr] = Field(default_factory=list)
    fact_ids: list[StrictStr] = Field(default_factory=list)
    relation_indexes: list[StrictInt] = Field(default_factory=list)


class _RawExtractionPayload(_RawModel):
    title: StrictStr = Field(max_length=25)
    note_type: StrictStr = "note"
    summary: StrictStr = ""
    language: StrictStr = "unknown"
    date: StrictStr | None = None
    sentiment: StrictStr = "neutral"
    emotions: list[_RawEmotion]
    entities: list[_RawEntity]
    facts: list[_RawFact]
    relations: list[_RawRelation]
    groups: list[_RawGroup]
    todos: list[_RawTodo] = Field(default_factory=list)
    segments: list[_RawSegment] = Field(default_factory=list)

    @field_validator("sentiment", mode="before")
    @classmethod
    def _normalize_sentiment(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            lowered = _SENTIMENT_ALIASES.get(lowered, lowered)
            return lowered if lowered in _SENTIMENTS else "neutral"
        return value


class _RawLegacyItem(_RawModel):
    label: StrictStr
    value: StrictStr
    start: StrictInt
    end: StrictInt
    confidence: Confidence


class _RawLegacyGroup(_RawModel):
    name: StrictStr
    item_indexes: list[StrictInt]


class _RawLegacyPayload(_RawModel):
    title: StrictStr = Field(max_length=25)
    memory: StrictStr | None = None
    items: list[_RawLegacyItem]
    groups: list[_RawLegacyGroup]


def detect_payload_shape(raw: Any) -> PayloadShape:
    """Discriminate between the single-array and the multi-array payload shapes."""

    if not isinstance(raw, dict):
        raise ExtractionValidationError("Extraction must be an object.")
    if "items" in raw and "entities" not in raw and "facts" not in raw:
        return "legacy"
    return "v2"


def validate_payload(text: str, raw: Any) -> Extraction | LegacyExtraction:
    """Validate either payload shape after an explicit discriminant check."""

    if detect_payload_shape(raw) == "legacy":
        return validate_legacy_extraction(text, raw)
    return validate_extraction(text, raw)


def parse_and_validate_extraction(text: str, raw_output: str | dict[str, Any]) -> Extraction:
    """Decode (when given text) and validate a multi-array extraction payload."""

    raw = parse_model_output(raw_output) if isinstance(raw_output, str) else raw_output
    if detect_payload_shape(raw) == "legacy":
        raise ExtractionValidationError("Expected entities/facts arrays but received a single-array items payload.")
    return validate_extraction(text, raw)


def validate_extraction(text: str, raw: Any) -> Extraction:
    """Type-check a multi-array payload and ground every span against ``text``."""

    if not isinstance(raw, dict):
        raise ExtractionValidationError("Extraction must be an object.")
    payload = _model_validate(_RawExtractionPayload, raw)

    entities: list[Entity] = []
    for index, entity in enumerate(payload.entities):
        name_span = ground_span(text, entity.name, entity.name_start, entity.name_end)
        if name_span is None:
            logger.debug("auto_extract.grounding_dropped kind=entity id=%s name=%r", entity.id, entity.name)
            continue
        evidence = _optional_span(
            text,
            f"entities[{index}]",
            entity.evidence_start,
            entity.evidence_end,
            entity.evidence_text,
        )
        entities.append(
            Entity(
                id=entity.id,
                name=entity.name,
                type=entity.type,
                name_start=name_span[0],
                name_end=name_span[1],
                evidence_start=evidence[0] if evidence else None,
                evidence_end=evidence[1] if evidence else None,
                context=entity.context,
                confidence=entity.confidence,
            )
        )
    entity_ids = {entity.id for entity in entities}
    dropped_entity_ids = {entity.id for entity in payload.entities} - entity_ids

    facts: list[Fact] = []
    for index, fact in enumerate(payload.facts):
        evidence = _required_span(
            text,
            f"facts[{index}]",
            fact.evidence_start,
            fact.evidence_end,
            fact.evidence_text,
        )
        if evidence is None:
            logger.debug("auto_extract.grounding_dropped kind=fact id=%s", fact.id)
            continue
        facts.append(
            Fact(
                id=fact.id,
                owner_entity_id=fact.owner_entity_id,
                perspective=fact.perspective,
                subject_entity_id=_prune_ref(fact.subject_entity_id, dropped_entity_ids),
                predicate=fact.predicate,
                object_entity_id=_prune_ref(fact.object_entity_id, dropped_entity_ids),
                object_text=fact.object_text,
                evidence_start=evidence[0],
                evidence_end=evidence[1],
                confidence=fact.confidence,
            )
        )
    fact_ids = {fact.id for fact in facts}

    relations: list[Relation] = []
    relation_index_map: dict[int, int] = {}
    for index, relation in enumerate(payload.relations):
        if relation.from_entity_id not in entity_ids or relation.to_entity_id not in entity_ids:
            continue
        relation_index_map[index] = len(relations)
        evidence = _optional_span(
            text,
            f"relations[{index}]",
            relation.evidence_start,
            relation.evidence_end,
            relation.evidence_text,
        )
        relations.append(
            Relation(
                from_entity_id=relation.from_entity_id,
                to_entity_id=relation.to_entity_id,
                type=relation.type,
                evidence_start=evidence[0] if evidence else None,
                evidence_end=evidence[1] if evidence else None,
                confidence=relation.confidence,
            )
        )

    todos: list[Todo] = []
    for index, todo in enumerate(payload.todos):
        evidence = _required_span(
            text,
            f"todos[{index}]",
            todo.evidence_start,
            todo.evidence_end,
            todo.evidence_text,
        )
        if evidence is None:
            continue
        todos.append(
            Todo(
                id=todo.id,
                description=todo.description,
                assignee_entity_id=_keep_ref(todo.assignee_entity_id, entity_ids),
                evidence_start=evidence[0],
                evidence_end=evidence[1],
                confidence=todo.confidence,
            )
        )

    groups = [
        Group(
            name=group.name,
            entity_ids=[entity_id for entity_id in group.entity_ids if entity_id in entity_ids],
            fact_ids=[fact_id for fact_id in group.fact_ids if fact_id in fact_ids],
        )
        for group in payload.groups
    ]

    segments = [
        Segment(
            id=segment.id,
            start=segment.start,
            end=segment.end,
            sentiment=_normalize_sentiment(segment.sentiment),
            summary=segment.summary,
            entity_ids=[entity_id for entity_id in segment.entity_ids if entity_id in entity_ids],
            fact_ids=[fact_id for fact_id in segment.fact_ids if fact_id in fact_ids],
            relation_indexes=[relation_index_map[i] for i in segment.relation_indexes if i in relation_index_map],
        )
        for segment in payload.segments
        if 0 <= segment.start < segment.end <= len(text)
    ]

    return Extraction(
        title=payload.title,
        note_type=payload.note_type,
        summary=payload.summary,
        language=payload.language,
        date=payload.date,
        sentiment=payload.sentiment,
        emotions=[Emotion(emotion=emotion.emotion, intensity=emotion.intensity) for emotion in payload.emotions],
        entities=entities,
        facts=facts,
        relations=relations,
        todos=todos,
        groups=groups,
        segments=segments,
    )


def validate_legacy_extraction(text: str, raw: Any) -> LegacyExtraction:
    """Validate the single-array ``items`` payload, remapping group indexes after drops."""

    if not isinstance(raw, dict):
        raise ExtractionValidationError("Extraction must be an object.")
    payload = _model_validate(_RawLegacyPayload, raw)

    items: list[LegacyItem] = []
    index_map: dict[int, int] = {}
    for index, item in enumerate(payload.items):
        span = ground_span(text, item.value, item.start, item.end)
        if span is None:
            continue
        index_map[index] = len(items)
        items.append(
            LegacyItem(
                label=item.label,
                value=item.value,
                start=span[0],
                end=span[1],
                confidence=item.confidence,
            )
        )

    groups = [
        LegacyGroup(
            name=group.name,
            item_indexes=[index_map[i] for i in group.item_indexes if i in index_map],
        )
        for group in payload.groups
    ]
    return LegacyExtraction(title=payload.title, memory=payload.memory, items=items, groups=groups)


def _model_validate(model: type[_RawModel], raw: dict[str, Any]) -> Any:
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise ExtractionValidationError(f"{_format_loc(first['loc'])}: {first['msg']}") from exc


def _format_loc(loc: tuple[int | str, ...]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "extraction"


def _check_bounds(label: str, start: int, end: int, text_length: int) -> None:
    if start < 0 or start >= text_length:
        raise ExtractionValidationError(f"{label}.evidenceStart: out of bounds ({start} for text length {text_length})")
    if end <= start or end > text_length:
        raise ExtractionValidationError(f"{label}.evidenceEnd: out of bounds ({end} for start {start}, text length {text_length})")


def _required_span(
    text: str,
    label: str,
    start: int,
    end: int,
    literal: str | None,
) -> tuple[int, int] | None:
    if literal is not None:
        return ground_span(text, literal, start, end)
    _check_bounds(label, start, end, len(text))
    return start, end


def _optional_span(
    text: str,
    label: str,
    start: int | None,
    end: int | None,
    literal: str | None,
) -> tuple[int, int] | None:
    if start is None or end is None:
        if literal:
            return ground_span(text, literal, start if start is not None else 0, 0)
        return None
    return _required_span(text, label, start, end, literal)


def _prune_ref(value: str | None, dropped: set[str]) -> str | None:
    if value is None or value in dropped:
        return None
    return value


def _keep_ref(value: str | None, valid: set[str]) -> str | None:
    if value is None or value not in valid:
        return None
    return value


def _normalize_sentiment(value: str) -> str:
    lowered = _SENTIMENT_ALIASES.get(value.strip().lower(), value.strip().lower())
    return lowered if lowered in _SENTIMENTS else "neutral"
