"""Canonical tag buckets for entities and facts."""

from __future__ import annotations

from auto_extract.extraction.patterns import GROUP_BUCKET_PATTERNS, REFLECTIVE_PATTERN
from auto_extract.extraction.todos import TODO_PREDICATE
from auto_extract.schemas.extraction import Extraction, Group

CANONICAL_GROUPS = ("people", "places", "actions", "memories", "todos")


def bucket_for(name: str) -> str | None:
    for bucket, pattern in GROUP_BUCKET_PATTERNS:
        if pattern.search(name):
            return bucket
    return None


def normalize_groups(extraction: Extraction, text: str) -> Extraction:
    """Fold model groups into canonical buckets and add derived membership."""

    entity_ids = {entity.id for entity in extraction.entities}
    fact_ids = {fact.id for fact in extraction.facts}
    members: dict[str, tuple[list[str], list[str]]] = {name: ([], []) for name in CANONICAL_GROUPS}

    def add(name: str, entities: list[str], facts: list[str]) -> None:
        bucket_entities, bucket_facts = members.setdefault(name, ([], []))
        for entity_id in entities:
            if entity_id in entity_ids and entity_id not in bucket_entities:
                bucket_entities.append(entity_id)
        for fact_id in facts:
            if fact_id in fact_ids and fact_id not in bucket_facts:
                bucket_facts.append(fact_id)

    for group in extraction.groups:
        add(bucket_for(group.name) or group.name.strip() or "other", group.entity_ids, group.fact_ids)

    for entity in extraction.entities:
        if entity.type == "person":
            add("people", [entity.id], [])
        elif entity.type == "place":
            add("places", [entity.id], [])

    for fact in extraction.facts:
        evidence = text[fact.evidence_start : fact.evidence_end]
        if fact.predicate == TODO_PREDICATE:
            add("todos", [], [fact.id])
        elif REFLECTIVE_PATTERN.search(f"{evidence} {fact.predicate}"):
            add("memories", [], [fact.id])
        else:
            add("actions", [], [fact.id])

    groups = [
        Group(name=name, entity_ids=entities, fact_ids=facts)
        for name, (entities, facts) in members.items()
        if entities or facts
    ]
    return extraction.model_copy(update={"groups": groups})
