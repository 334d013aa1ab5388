"""Query classification shared by threshold selection and keyword scoring."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class QueryKind(str, Enum):
    QUESTION = "question"
    STATEMENT = "statement"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class QueryClass:
    kind: QueryKind
    subject_hint: str | None = None

    @property
    def is_question(self) -> bool:
        return self.kind is QueryKind.QUESTION


INTERROGATIVES = (
    "what",
    "who",
    "whom",
    "whose",
    "when",
    "where",
    "why",
    "how",
    "which",
    "can",
    "could",
    "would",
    "do",
    "does",
    "did",
    "is",
    "are",
)

ATTRIBUTE_WORDS = ("favorite", "favourite", "prefer", "preferred", "best")

_LEADING_WORD = re.compile(r"^[^\w]*(\w+)")
_TELL_ME = re.compile(r"^\s*tell\s+me\b", re.IGNORECASE)
_PREFERENCE_SUBJECT = re.compile(r"\b(?:favorite|favourite|preferred|best)\s+([a-z0-9]+)", re.IGNORECASE)
_POSSESSIVE_SUBJECT = re.compile(r"\b(?:my|your|their|his|her|our)\s+([a-z0-9]+)", re.IGNORECASE)
# A word glued (or space/hyphen joined) to a number: "308gtsi", "ferrari 308gtsi", "gpt-4o"
_BRAND_MODEL = re.compile(
    r"\b([a-z]+[\s-]?[0-9]+[a-z0-9]*|[0-9]+[a-z][a-z0-9]*)\b",
    re.IGNORECASE,
)

# Words that follow a possessive but are never the subject ("my favorite", "your own")
_SUBJECT_SKIP = frozenset(
    {*ATTRIBUTE_WORDS, "own", "last", "first", "next", "previous", "the", "a", "an"}
)


def extract_subject(text: str) -> str | None:
    """Return the noun a personal-attribute question is about ("favorite car" -> "car")."""
    lowered = text.lower()
    for pattern in (_PREFERENCE_SUBJECT, _POSSESSIVE_SUBJECT):
        for match in pattern.finditer(lowered):
            subject = match.group(1)
            if subject not in _SUBJECT_SKIP:
                return subject
    return None


def is_question(text: str) -> bool:
    if "?" in text:
        return True
    if _TELL_ME.match(text):
        return True
    match = _LEADING_WORD.match(text.lower())
    return bool(match) and match.group(1) in INTERROGATIVES


def classify_query(text) -> QueryClass:
    """Classify a user query as question or statement, with a subject hint for questions."""
    if not isinstance(text, str) or not text.strip():
        return QueryClass(QueryKind.UNKNOWN)
    if is_question(text):
        return QueryClass(QueryKind.QUESTION, extract_subject(text))
    return QueryClass(QueryKind.STATEMENT)


def extract_brand_models(text: str) -> list[str]:
    """Lower-cased tokens that pair a word with a model number."""
    return [m.lower() for m in _BRAND_MODEL.findall(text)]
