"""Narrator identification and fact ownership resolution."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auto_extract.extraction.patterns import (
    DRIVING_PATTERN,
    NOTETAKER_LABEL,
    SELF_ENTITY_ID,
    SINGULAR_SELF_DRIVING_PATTERN,
    THIRD_PERSON_LEAD_PATTERN,
    find_narrator_anchor,
    is_narrator_candidate,
    leading_name_match,
    leads_with_collective,
    leads_with_first_person,
    replace_narrator_wording,
)
from auto_extract.schemas.extraction import Entity, Extraction, Fact, Group, Relation

logger = logging.getLogger(__name__)


def resolve_ownership(extraction: Extraction, text: str) -> Extraction:
    """Collapse narrator candidates into one self entity and re-own every fact.

    Facts that cannot be attributed to any surviving entity are dropped, and all
    id references (relations, todos, groups, segments) are remapped through the
    same substitution table and filtered to ids that still exist.
    """

    entities = _dedupe_by_id(extraction.entities)
    candidates = [entity for entity in entities if is_narrator_candidate(entity.id, entity.name, entity.context)]
    id_map = {candidate.id: SELF_ENTITY_ID for candidate in candidates}
    self_entity = _build_self_entity(candidates, text)

    others = [
        entity.model_copy(update={"context": _rewrite(entity.context)})
        for entity in entities
        if entity.id not in id_map
    ]
    resolved_entities = ([self_entity] if self_entity is not None else []) + others
    entity_ids = {entity.id for entity in resolved_entities}
    other_names = {entity.id: entity.name for entity in others}

    def remap(entity_id: str | None) -> str | None:
        if entity_id is None:
            return None
        mapped = id_map.get(entity_id, entity_id)
        return mapped if mapped in entity_ids else None

    facts: list[Fact] = []
    for fact in extraction.facts:
        evidence = text[fact.evidence_start : fact.evidence_end]
        subject = remap(fact.subject_entity_id)
        led_by = leading_name_match(evidence, other_names)
        third_person = led_by is not None or THIRD_PERSON_LEAD_PATTERN.match(evidence) is not None

        if self_entity is not None and (fact.perspective == "self" or leads_with_first_person(evidence)):
            owner = SELF_ENTITY_ID
        else:
            owner = remap(fact.owner_entity_id) or subject or led_by
        if owner is None:
            logger.debug("auto_extract.ownership_dropped fact_id=%s owner=%s", fact.id, fact.owner_entity_id)
            continue

        if owner == SELF_ENTITY_ID:
            perspective = "self"
        elif third_person or (subject is not None and subject != SELF_ENTITY_ID):
            perspective = "other"
        else:
            perspective = "uncertain"

        object_entity_id = remap(fact.object_entity_id)
        facts.append(
            fact.model_copy(
                update={
                    "owner_entity_id": owner,
                    "perspective": perspective,
                    "subject_entity_id": subject,
                    "object_entity_id": object_entity_id,
                    "object_text": None if object_entity_id is not None else fact.object_text,
                    "predicate": replace_narrator_wording(fact.predicate),
                }
            )
        )
    fact_ids = {fact.id for fact in facts}

    relations: list[Relation] = []
    relation_index_map: dict[int, int] = {}
    for index, relation in enumerate(extraction.relations):
        from_id = remap(relation.from_entity_id)
        to_id = remap(relation.to_entity_id)
        if from_id is None or to_id is None:
            continue
        if from_id == to_id and relation.from_entity_id != relation.to_entity_id:
            continue
        relation_index_map[index] = len(relations)
        relations.append(relation.model_copy(update={"from_entity_id": from_id, "to_entity_id": to_id}))

    todos = [
        todo.model_copy(update={"assignee_entity_id": remap(todo.assignee_entity_id)})
        for todo in extraction.todos
    ]

    groups = [
        Group(
            name=group.name,
            entity_ids=_filter_ids((id_map.get(i, i) for i in group.entity_ids), entity_ids),
            fact_ids=_filter_ids(group.fact_ids, fact_ids),
        )
        for group in extraction.groups
    ]
    segments = [
        segment.model_copy(
            update={
                "entity_ids": _filter_ids((id_map.get(i, i) for i in segment.entity_ids), entity_ids),
                "fact_ids": _filter_ids(segment.fact_ids, fact_ids),
                "relation_indexes": [
                    relation_index_map[i] for i in segment.relation_indexes if i in relation_index_map
                ],
            }
        )
        for segment in extraction.segments
    ]

    return extraction.model_copy(
        update={
            "summary": replace_narrator_wording(extraction.summary),
            "entities": resolved_entities,
            "facts": facts,
            "relations": relations,
            "todos": todos,
            "groups": groups,
            "segments": segments,
        }
    )


def remove_collective_driving_conflicts(extraction: Extraction, text: str) -> Extraction:
    """Drop "we were driving" self facts when another entity owns an explicit "I was driving" fact."""

    def evidence_of(fact: Fact) -> str:
        return text[fact.evidence_start : fact.evidence_end]

    def is_driving(fact: Fact) -> bool:
        return DRIVING_PATTERN.search(f"{evidence_of(fact)} {fact.predicate}") is not None

    if not any(
        fact.owner_entity_id != SELF_ENTITY_ID and SINGULAR_SELF_DRIVING_PATTERN.search(evidence_of(fact)) is not None
        for fact in extraction.facts
    ):
        return extraction

    removed = {
        fact.id
        for fact in extraction.facts
        if fact.owner_entity_id == SELF_ENTITY_ID
        and is_driving(fact)
        and leads_with_collective(evidence_of(fact))
        and SINGULAR_SELF_DRIVING_PATTERN.search(evidence_of(fact)) is None
    }
    if not removed:
        return extraction
    logger.info("auto_extract.collective_driving_removed fact_ids=%s", ",".join(sorted(removed)))
    return without_facts(extraction, removed)


def without_facts(extraction: Extraction, removed: set[str]) -> Extraction:
    """Remove facts by id and prune every reference to them."""

    return extraction.model_copy(
        update={
            "facts": [fact for fact in extraction.facts if fact.id not in removed],
            "groups": [
                group.model_copy(update={"fact_ids": [i for i in group.fact_ids if i not in removed]})
                for group in extraction.groups
            ],
            "segments": [
                segment.model_copy(update={"fact_ids": [i for i in segment.fact_ids if i not in removed]})
                for segment in extraction.segments
            ],
        }
    )


def find_self_entity(extraction: Extraction) -> Entity | None:
    for entity in extraction.entities:
        if entity.id == SELF_ENTITY_ID:
            return entity
    return None


def _build_self_entity(candidates: list[Entity], text: str) -> Entity | None:
    anchor = find_narrator_anchor(text)
    if anchor is None and not candidates:
        return None

    first = candidates[0] if candidates else None
    context = _rewrite(first.context) if first is not None else None
    if not context:
        context = NOTETAKER_LABEL
    elif NOTETAKER_LABEL not in context.lower():
        context = f"{context} ({NOTETAKER_LABEL})"

    if anchor is not None:
        name, name_start, name_end = anchor.group(0), anchor.start(), anchor.end()
    else:
        name, name_start, name_end = first.name, first.name_start, first.name_end

    evidence = next(
        (
            (candidate.evidence_start, candidate.evidence_end)
            for candidate in candidates
            if candidate.evidence_start is not None and candidate.evidence_end is not None
        ),
        (None, None),
    )
    return Entity(
        id=SELF_ENTITY_ID,
        name=name,
        type="person",
        name_start=name_start,
        name_end=name_end,
        evidence_start=evidence[0],
        evidence_end=evidence[1],
        context=context,
        confidence=max((candidate.confidence for candidate in candidates), default=1.0),
    )


def _dedupe_by_id(entities: Iterable[Entity]) -> list[Entity]:
    seen: set[str] = set()
    result: list[Entity] = []
    for entity in entities:
        if entity.id in seen:
            continue
        seen.add(entity.id)
        result.append(entity)
    return result


def _filter_ids(ids: Iterable[str], valid: set[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in ids:
        if value in valid and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _rewrite(value: str | None) -> str | None:
    return replace_narrator_wording(value) if value else value

