"""Evidence clustering into sentence-aligned narrative segments."""

from __future__ import annotations

import re
from collections.abc import Iterable

from auto_extract.extraction.patterns import SENTENCE_TERMINATORS, classify_fact_sentiment
from auto_extract.schemas.extraction import Extraction, Fact, Segment

SEGMENT_GAP_THRESHOLD = 80
SEGMENT_SUMMARY_CHARS = 120
_WHITESPACE_RE = re.compile(r"\s+")


def collect_evidence_spans(extraction: Extraction) -> list[tuple[int, int]]:
    """Flatten fact evidence plus entity name/evidence spans into ``[start, end)`` ranges."""

    spans = [(fact.evidence_start, fact.evidence_end) for fact in extraction.facts]
    for entity in extraction.entities:
        spans.append((entity.name_start, entity.name_end))
        if entity.evidence_start is not None and entity.evidence_end is not None:
            spans.append((entity.evidence_start, entity.evidence_end))
    return spans


def cluster_spans(spans: Iterable[tuple[int, int]], gap_threshold: int = SEGMENT_GAP_THRESHOLD) -> list[tuple[int, int]]:
    """Single-pass interval merge: join spans whose gap to the running cluster is within threshold."""

    clusters: list[tuple[int, int]] = []
    for start, end in sorted(spans):
        if clusters and start - clusters[-1][1] <= gap_threshold:
            cluster_start, cluster_end = clusters[-1]
            clusters[-1] = (cluster_start, max(cluster_end, end))
        else:
            clusters.append((start, end))
    return clusters


def clamp_to_sentences(text: str, start: int, end: int) -> tuple[int, int]:
    """Widen a range to the enclosing sentence boundaries, keeping the closing terminator."""

    left = start
    while left > 0 and text[left - 1] not in SENTENCE_TERMINATORS:
        left -= 1
    while left < start and text[left].isspace():
        left += 1

    right = end
    if not (right > left and text[right - 1] in SENTENCE_TERMINATORS):
        while right < len(text) and text[right] not in SENTENCE_TERMINATORS:
            right += 1
        if right < len(text):
            right += 1
    return left, right


def rollup_sentiment(values: Iterable[str]) -> str:
    """Unanimous sentiment wins; any disagreement is ``varied``; nothing is ``neutral``."""

    distinct = set(values)
    if not distinct:
        return "neutral"
    if len(distinct) == 1:
        return distinct.pop()
    return "varied"


def fact_sentiment(fact: Fact, text: str) -> str:
    evidence = text[fact.evidence_start : fact.evidence_end]
    return classify_fact_sentiment(" ".join((evidence, fact.predicate, fact.object_text or "")))


def summarize_segment(value: str) -> str:
    collapsed = _WHITESPACE_RE.sub(" ", value).strip()
    return collapsed[:SEGMENT_SUMMARY_CHARS].rstrip()


def segment_extraction(extraction: Extraction, text: str) -> tuple[Extraction, list[str]]:
    """Derive segments and sentiment rollups, stamping each fact with its first segment.

    Returns the segmented extraction and a human-readable trace of the
    clustering decisions for the debug bundle.
    """

    trace: list[str] = []
    spans = collect_evidence_spans(extraction)
    if not spans:
        ranges = [(0, len(text))] if text else []
        trace.append(f"no evidence spans; single segment [0,{len(text)})")
    else:
        clusters = cluster_spans(spans)
        trace.append(f"spans={len(spans)} clusters={len(clusters)} gap_threshold={SEGMENT_GAP_THRESHOLD}")
        ranges = []
        for index, (start, end) in enumerate(clusters, start=1):
            clamped = clamp_to_sentences(text, start, end)
            trace.append(f"cluster {index}: [{start},{end}) -> sentence-aligned [{clamped[0]},{clamped[1]})")
            ranges.append(clamped)

    segments: list[Segment] = []
    fact_segments: dict[str, str] = {}
    for index, (start, end) in enumerate(ranges, start=1):
        segment_id = f"seg_{index}"
        facts = [fact for fact in extraction.facts if _overlaps(fact.evidence_start, fact.evidence_end, start, end)]
        entity_ids = [
            entity.id
            for entity in extraction.entities
            if _overlaps(entity.name_start, entity.name_end, start, end)
            or _overlaps(entity.evidence_start, entity.evidence_end, start, end)
        ]
        attached = set(entity_ids)
        relation_indexes = [
            relation_index
            for relation_index, relation in enumerate(extraction.relations)
            if (relation.from_entity_id in attached and relation.to_entity_id in attached)
            or _overlaps(relation.evidence_start, relation.evidence_end, start, end)
        ]
        for fact in facts:
            fact_segments.setdefault(fact.id, segment_id)
        segments.append(
            Segment(
                id=segment_id,
                start=start,
                end=end,
                sentiment=rollup_sentiment(fact_sentiment(fact, text) for fact in facts),
                summary=summarize_segment(text[start:end]),
                entity_ids=entity_ids,
                fact_ids=[fact.id for fact in facts],
                relation_indexes=relation_indexes,
            )
        )

    stamped = [fact.model_copy(update={"segment_id": fact_segments.get(fact.id)}) for fact in extraction.facts]
    return (
        extraction.model_copy(
            update={
                "facts": stamped,
                "segments": segments,
                "sentiment": rollup_sentiment(segment.sentiment for segment in segments),
            }
        ),
        trace,
    )


def _overlaps(start: int | None, end: int | None, range_start: int, range_end: int) -> bool:
    if start is None or end is None:
        return False
    return start < range_end and range_start < end
