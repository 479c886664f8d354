"""Unit tests for span grounding and payload validation."""

from __future__ import annotations

import unittest

from auto_extract.extraction.validate import (
    ExtractionValidationError,
    detect_payload_shape,
    find_closest_match_start,
    find_first_json_object,
    ground_span,
    parse_and_validate_extraction,
    parse_model_output,
    validate_extraction,
    validate_legacy_extraction,
    validate_payload,
)
from auto_extract.schemas.extraction import LegacyExtraction

TEXT = "I want Gemma 2B Q5 with llama.cpp under 3GB RAM"


def _payload(**overrides) -> dict:
    payload = {
        "title": "Local model note",
        "noteType": "personal",
        "summary": "Wants a small local model.",
        "language": "en",
        "date": None,
        "sentiment": "neutral",
        "emotions": [],
        "entities": [],
        "facts": [],
        "relations": [],
        "groups": [],
    }
    payload.update(overrides)
    return payload


def _entity(entity_id: str, name: str, start: int, **extra) -> dict:
    entity = {
        "id": entity_id,
        "name": name,
        "type": "tool",
        "nameStart": start,
        "nameEnd": start + len(name),
        "confidence": 0.9,
    }
    entity.update(extra)
    return entity


def _fact(fact_id: str, start: int, end: int, **extra) -> dict:
    fact = {
        "id": fact_id,
        "ownerEntityId": "ent_self",
        "perspective": "self",
        "predicate": "wants",
        "evidenceStart": start,
        "evidenceEnd": end,
        "confidence": 0.8,
    }
    fact.update(extra)
    return fact


class GroundingTests(unittest.TestCase):
    def test_exact_item_span_is_accepted_unchanged(self) -> None:
        start = TEXT.index("llama.cpp")
        result = validate_legacy_extraction(
            TEXT,
            {
                "title": "Models",
                "items": [{"label": "tool", "value": "llama.cpp", "start": start, "end": start + 9, "confidence": 0.9}],
                "groups": [],
            },
        )

        self.assertEqual(len(result.items), 1)
        self.assertEqual((result.items[0].start, result.items[0].end), (start, start + 9))

    def test_negative_start_is_repaired_by_nearest_occurrence(self) -> None:
        result = validate_legacy_extraction(
            TEXT,
            {
                "title": "Models",
                "items": [{"label": "model", "value": "Gemma 2B Q5", "start": -1, "end": 10, "confidence": 0.7}],
                "groups": [],
            },
        )

        item = result.items[0]
        self.assertEqual(item.start, 7)
        self.assertEqual(TEXT[item.start : item.end], "Gemma 2B Q5")

    def test_nearest_occurrence_prefers_closest_and_first_on_ties(self) -> None:
        text = "cat dog cat dog cat"
        self.assertEqual(find_closest_match_start(text, "cat", 9), 8)
        self.assertEqual(find_closest_match_start(text, "cat", 4), 0)
        self.assertEqual(find_closest_match_start(text, "bird", 4), -1)

    def test_ground_span_returns_none_for_missing_literal(self) -> None:
        self.assertIsNone(ground_span(TEXT, "Mistral", 0, 7))
        self.assertIsNone(ground_span(TEXT, "", 0, 0))

    def test_legacy_groups_are_remapped_after_dropped_items(self) -> None:
        start = TEXT.index("llama.cpp")
        result = validate_legacy_extraction(
            TEXT,
            {
                "title": "Models",
                "items": [
                    {"label": "model", "value": "Mistral", "start": 0, "end": 7, "confidence": 0.5},
                    {"label": "tool", "value": "llama.cpp", "start": start, "end": start + 9, "confidence": 0.9},
                ],
                "groups": [{"name": "tools", "itemIndexes": [0, 1]}],
            },
        )

        self.assertEqual([item.value for item in result.items], ["llama.cpp"])
        self.assertEqual(result.groups[0].item_indexes, [0])


class ExtractionValidationTests(unittest.TestCase):
    def test_ungroundable_entity_is_dropped_with_its_references(self) -> None:
        tool_start = TEXT.index("llama.cpp")
        result = validate_extraction(
            TEXT,
            _payload(
                entities=[
                    _entity("ent_tool", "llama.cpp", tool_start),
                    _entity("ent_ghost", "Mistral", 3),
                ],
                facts=[_fact("fact_1", 0, 6, subjectEntityId="ent_ghost", objectEntityId="ent_tool")],
                relations=[
                    {"fromEntityId": "ent_tool", "toEntityId": "ent_ghost", "type": "runs", "confidence": 0.6},
                ],
                groups=[{"name": "tools", "entityIds": ["ent_tool", "ent_ghost"], "factIds": ["fact_1", "fact_x"]}],
            ),
        )

        self.assertEqual([entity.id for entity in result.entities], ["ent_tool"])
        self.assertIsNone(result.facts[0].subject_entity_id)
        self.assertEqual(result.facts[0].object_entity_id, "ent_tool")
        self.assertEqual(result.relations, [])
        self.assertEqual(result.groups[0].entity_ids, ["ent_tool"])
        self.assertEqual(result.groups[0].fact_ids, ["fact_1"])

    def test_segment_relation_indexes_follow_dropped_relations(self) -> None:
        tool_start = TEXT.index("llama.cpp")
        gemma_start = TEXT.index("Gemma")
        result = validate_extraction(
            TEXT,
            _payload(
                entities=[_entity("ent_tool", "llama.cpp", tool_start), _entity("ent_gemma", "Gemma", gemma_start)],
                relations=[
                    {"fromEntityId": "ent_tool", "toEntityId": "ent_ghost", "type": "runs", "confidence": 0.6},
                    {"fromEntityId": "ent_tool", "toEntityId": "ent_gemma", "type": "serves", "confidence": 0.7},
                ],
                segments=[{"id": "seg_1", "start": 0, "end": len(TEXT), "relationIndexes": [0, 1]}],
            ),
        )

        self.assertEqual([relation.type for relation in result.relations], ["serves"])
        self.assertEqual(result.segments[0].relation_indexes, [0])

    def test_evidence_text_repairs_fact_span(self) -> None:
        result = validate_extraction(
            TEXT,
            _payload(facts=[_fact("fact_1", 0, 5, evidenceText="under 3GB RAM")]),
        )

        fact = result.facts[0]
        self.assertEqual(TEXT[fact.evidence_start : fact.evidence_end], "under 3GB RAM")

    def test_fact_with_ungroundable_evidence_text_is_dropped(self) -> None:
        result = validate_extraction(
            TEXT,
            _payload(facts=[_fact("fact_1", 0, 5, evidenceText="under 8GB VRAM")]),
        )

        self.assertEqual(result.facts, [])

    def test_out_of_bounds_span_reports_field_path(self) -> None:
        with self.assertRaises(ExtractionValidationError) as ctx:
            validate_extraction(
                TEXT,
                _payload(facts=[_fact("fact_1", 0, 6), _fact("fact_2", 5, 500)]),
            )

        self.assertIn("facts[1].evidenceEnd", str(ctx.exception))

    def test_confidence_outside_unit_interval_is_rejected(self) -> None:
        with self.assertRaises(ExtractionValidationError) as ctx:
            validate_extraction(TEXT, _payload(entities=[_entity("ent_tool", "llama.cpp", 24, confidence=1.5)]))

        self.assertTrue(str(ctx.exception).startswith("entities[0].confidence"))

    def test_non_integer_span_is_rejected(self) -> None:
        with self.assertRaises(ExtractionValidationError) as ctx:
            validate_extraction(TEXT, _payload(facts=[_fact("fact_1", 0.5, 6)]))

        self.assertTrue(str(ctx.exception).startswith("facts[0].evidenceStart"))

    def test_title_longer_than_limit_is_rejected(self) -> None:
        with self.assertRaises(ExtractionValidationError) as ctx:
            validate_extraction(TEXT, _payload(title="x" * 26))

        self.assertTrue(str(ctx.exception).startswith("title"))

    def test_missing_required_array_is_rejected(self) -> None:
        payload = _payload()
        del payload["facts"]

        with self.assertRaises(ExtractionValidationError) as ctx:
            validate_extraction(TEXT, payload)

        self.assertTrue(str(ctx.exception).startswith("facts"))

    def test_unknown_enum_values_are_normalized(self) -> None:
        result = validate_extraction(
            TEXT,
            _payload(
                sentiment="Mixed",
                entities=[_entity("ent_tool", "llama.cpp", 24, type="software")],
                facts=[_fact("fact_1", 0, 6, perspective="narrator")],
                emotions=[{"emotion": "hope", "intensity": 9}],
            ),
        )

        self.assertEqual(result.sentiment, "varied")
        self.assertEqual(result.entities[0].type, "concept")
        self.assertEqual(result.facts[0].perspective, "uncertain")
        self.assertEqual(result.emotions[0].intensity, 5)

    def test_validation_is_idempotent(self) -> None:
        first = validate_extraction(
            TEXT,
            _payload(
                entities=[_entity("ent_tool", "llama.cpp", 20), _entity("ent_model", "Gemma 2B Q5", -1)],
                facts=[_fact("fact_1", 0, 5, evidenceText="I want Gemma 2B Q5")],
                relations=[
                    {"fromEntityId": "ent_model", "toEntityId": "ent_tool", "type": "runs_on", "confidence": 0.6},
                ],
            ),
        )
        second = validate_extraction(TEXT, first.model_dump(by_alias=True))

        self.assertEqual(first, second)
        for entity in second.entities:
            self.assertEqual(TEXT[entity.name_start : entity.name_end], entity.name)


class PayloadParsingTests(unittest.TestCase):
    def test_json_object_is_found_inside_prose_and_fences(self) -> None:
        raw = 'Sure! ```json\n{"a": "}{", "b": {"c": 1}}\n``` done'

        self.assertEqual(find_first_json_object(raw), '{"a": "}{", "b": {"c": 1}}')
        self.assertEqual(parse_model_output(raw), {"a": "}{", "b": {"c": 1}})

    def test_unbalanced_output_reports_raw_excerpt(self) -> None:
        with self.assertRaises(ExtractionValidationError) as ctx:
            parse_model_output('here is {"title": "Trip"')

        message = str(ctx.exception)
        self.assertIn("balanced JSON object", message)
        self.assertIn('Raw output: here is {"title": "Trip"', message)

    def test_invalid_json_inside_braces_is_reported(self) -> None:
        with self.assertRaises(ExtractionValidationError) as ctx:
            parse_model_output("result: {title: Trip} done")

        self.assertIn("not valid JSON", str(ctx.exception))

    def test_payload_shape_is_discriminated_before_validation(self) -> None:
        legacy = {"title": "Models", "items": [], "groups": []}

        self.assertEqual(detect_payload_shape(legacy), "legacy")
        self.assertEqual(detect_payload_shape(_payload()), "v2")
        self.assertIsInstance(validate_payload(TEXT, legacy), LegacyExtraction)
        with self.assertRaises(ExtractionValidationError):
            detect_payload_shape(["not", "an", "object"])

    def test_single_array_payload_is_rejected_where_entities_are_expected(self) -> None:
        with self.assertRaises(ExtractionValidationError):
            parse_and_validate_extraction(TEXT, '{"title": "Models", "items": [], "groups": []}')


if __name__ == "__main__":
    unittest.main()
