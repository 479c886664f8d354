"""Lexical heuristics for narrator, ownership, todo, and sentiment detection.

Every heuristic is a table of compiled patterns so it can be tested and
extended without touching the resolver or segmentation control flow. Tables
that encode a preference are ordered by priority (first entry wins).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

SELF_ENTITY_ID = "ent_self"
NOTETAKER_LABEL = "notetaker"


@dataclass(frozen=True, slots=True)
class PronounTier:
    """One priority tier of first-person pronouns used to anchor the narrator."""

    name: str
    pattern: re.Pattern[str]


# Singular first-person pronouns are preferred over plural ones.
NARRATOR_ANCHOR_TIERS: tuple[PronounTier, ...] = (
    PronounTier("singular", re.compile(r"\b(?:I|me|my|mine)\b", re.IGNORECASE)),
    PronounTier("plural", re.compile(r"\b(?:we|our|us)\b", re.IGNORECASE)),
)

NARRATOR_NAME_PATTERN = re.compile(r"^(?:i|me|my|mine|we|our|us)$", re.IGNORECASE)
NARRATOR_CONTEXT_PATTERN = re.compile(r"\b(?:narrator|notetaker)\b", re.IGNORECASE)
NARRATOR_WORD_PATTERN = re.compile(r"\bnarrator\b", re.IGNORECASE)

FIRST_PERSON_LEAD_PATTERN = re.compile(r"^\W*(?:i|me|my|mine|we|our|us)\b", re.IGNORECASE)
THIRD_PERSON_LEAD_PATTERN = re.compile(
    r"^\W*(?:he|she|they|it|his|her|their|them|egle)\b",
    re.IGNORECASE,
)
COLLECTIVE_LEAD_PATTERN = re.compile(r"^\W*(?:we|our|us)\b", re.IGNORECASE)

DRIVING_PATTERN = re.compile(r"\bdriv(?:e|es|ing|en)\b|\bdrove\b", re.IGNORECASE)
SINGULAR_SELF_DRIVING_PATTERN = re.compile(
    r"\bI\s+(?:was|am|were|'m)\s+driving\b|\bI\s+drove\b",
    re.IGNORECASE,
)

TODO_PHRASE_PATTERN = re.compile(
    r"\b(?:todo|to do|need to|must|should|remember to|don['’]t forget to)\b[^.!?\n]*",
    re.IGNORECASE,
)
TODO_LANGUAGE_PATTERN = re.compile(
    r"\b(?:todo|to do|task|need to|must|should|remember to|don['’]t forget to)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class SentimentCue:
    sentiment: str
    pattern: re.Pattern[str]


REFLECTIVE_PATTERN = re.compile(r"\b(?:remember\w*|memor\w*|childhood|reflect\w*)\b", re.IGNORECASE)

# Checked in order; the first matching bucket classifies the fact.
FACT_SENTIMENT_CUES: tuple[SentimentCue, ...] = (
    SentimentCue("negative", re.compile(r"\b(?:scared|fear\w*|unsafe|danger\w*|ice|icy|hazard\w*|worr\w*)\b", re.IGNORECASE)),
    SentimentCue("varied", REFLECTIVE_PATTERN),
    SentimentCue("positive", re.compile(r"\b(?:help\w*|support\w*|called|resolved|safe|good)\b", re.IGNORECASE)),
)

SENTENCE_TERMINATORS = frozenset(".!?\n")

GROUP_BUCKET_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("todos", re.compile(r"todo|task", re.IGNORECASE)),
    ("memories", re.compile(r"memor|childhood|reflect", re.IGNORECASE)),
    ("people", re.compile(r"people|person|persons", re.IGNORECASE)),
    ("places", re.compile(r"place|location", re.IGNORECASE)),
    ("actions", re.compile(r"action|event|driv", re.IGNORECASE)),
)


def leads_with_first_person(evidence: str) -> bool:
    return FIRST_PERSON_LEAD_PATTERN.match(evidence) is not None


def leads_with_collective(evidence: str) -> bool:
    return COLLECTIVE_LEAD_PATTERN.match(evidence) is not None


def leading_name_match(evidence: str, names: dict[str, str]) -> str | None:
    """Return the id of the entity whose name opens the evidence text, if any."""

    stripped = evidence.lstrip(" \t\r\n\"'([")
    lowered = stripped.lower()
    best: tuple[int, str] | None = None
    for entity_id, name in names.items():
        candidate = name.strip().lower()
        if not candidate or not lowered.startswith(candidate):
            continue
        tail = lowered[len(candidate) : len(candidate) + 1]
        if tail and (tail.isalnum() or tail == "_"):
            continue
        if best is None or len(candidate) > best[0]:
            best = (len(candidate), entity_id)
    return best[1] if best else None


def classify_fact_sentiment(text: str) -> str:
    for cue in FACT_SENTIMENT_CUES:
        if cue.pattern.search(text):
            return cue.sentiment
    return "neutral"


def is_narrator_candidate(entity_id: str, name: str, context: str | None) -> bool:
    if entity_id == SELF_ENTITY_ID:
        return True
    if NARRATOR_NAME_PATTERN.match(name.strip()):
        return True
    return bool(context and NARRATOR_CONTEXT_PATTERN.search(context))


def find_narrator_anchor(text: str) -> re.Match[str] | None:
    """Return the first pronoun occurrence of the highest-priority tier present."""

    for tier in NARRATOR_ANCHOR_TIERS:
        match = tier.pattern.search(text)
        if match is not None:
            return match
    return None


def replace_narrator_wording(value: str) -> str:
    def _swap(match: re.Match[str]) -> str:
        word = match.group(0)
        return NOTETAKER_LABEL.capitalize() if word[0].isupper() else NOTETAKER_LABEL

    return NARRATOR_WORD_PATTERN.sub(_swap, value)
