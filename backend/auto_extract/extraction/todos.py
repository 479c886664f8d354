"""Recover actionable phrases the model did not represent as facts."""

from __future__ import annotations

from auto_extract.extraction.patterns import (
    SELF_ENTITY_ID,
    TODO_LANGUAGE_PATTERN,
    TODO_PHRASE_PATTERN,
)
from auto_extract.schemas.extraction import Extraction, Fact, Todo

TODO_PREDICATE = "todo"
_SYNTHESIZED_CONFIDENCE = 0.6


def enrich_todos(extraction: Extraction, text: str) -> Extraction:
    """Add self-owned ``todo`` facts (and todo records) for uncovered intent phrases."""

    if not any(entity.id == SELF_ENTITY_ID for entity in extraction.entities):
        return extraction

    facts = list(extraction.facts)
    todos = list(extraction.todos)
    fact_ids = {fact.id for fact in facts}
    todo_ids = {todo.id for todo in todos}

    for match in TODO_PHRASE_PATTERN.finditer(text):
        start, end = _trim(text, match.start(), match.end())
        if end <= start:
            continue
        if any(_overlaps(fact, start, end) and _has_todo_language(fact, text) for fact in facts):
            continue

        phrase = text[start:end]
        fact_id = _next_id("fact_todo", fact_ids)
        facts.append(
            Fact(
                id=fact_id,
                owner_entity_id=SELF_ENTITY_ID,
                perspective="self",
                subject_entity_id=SELF_ENTITY_ID,
                predicate=TODO_PREDICATE,
                object_text=phrase,
                evidence_start=start,
                evidence_end=end,
                confidence=_SYNTHESIZED_CONFIDENCE,
            )
        )
        if not any(todo.evidence_start < end and start < todo.evidence_end for todo in todos):
            todos.append(
                Todo(
                    id=_next_id("todo", todo_ids),
                    description=phrase,
                    assignee_entity_id=SELF_ENTITY_ID,
                    evidence_start=start,
                    evidence_end=end,
                    confidence=_SYNTHESIZED_CONFIDENCE,
                )
            )

    if len(facts) == len(extraction.facts):
        return extraction
    return extraction.model_copy(update={"facts": facts, "todos": todos})


def _trim(text: str, start: int, end: int) -> tuple[int, int]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def _overlaps(fact: Fact, start: int, end: int) -> bool:
    return fact.evidence_start < end and start < fact.evidence_end


def _has_todo_language(fact: Fact, text: str) -> bool:
    content = " ".join(
        part
        for part in (fact.predicate, fact.object_text or "", text[fact.evidence_start : fact.evidence_end])
        if part
    )
    return fact.predicate == TODO_PREDICATE or TODO_LANGUAGE_PATTERN.search(content) is not None


def _next_id(prefix: str, taken: set[str]) -> str:
    index = 1
    while f"{prefix}_{index}" in taken:
        index += 1
    value = f"{prefix}_{index}"
    taken.add(value)
    return value
