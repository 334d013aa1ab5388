"""Lexical relevance between a query and a memory, independent of embeddings."""

from __future__ import annotations

import re

from query_analysis import ATTRIBUTE_WORDS, classify_query, extract_brand_models

ATTRIBUTE_MATCH_SCORE = 0.95
SUBJECT_MATCH_SCORE = 0.85

BRAND_MODEL_HIT = 5.0
WHOLE_WORD_HIT = 1.5
PARTIAL_WORD_HIT = 0.5
REPEAT_BONUS_STEP = 0.2
REPEAT_BONUS_CAP = 1.0
MAX_WORD_SCORE = 2.5  # whole-word hit plus the full repeat bonus
PHRASE_HIT = 3.0
EARLY_PHRASE_BONUS = 1.0
EARLY_PHRASE_WINDOW = 50
MAX_PHRASE_SCORE = PHRASE_HIT + EARLY_PHRASE_BONUS

_PUNCTUATION = re.compile(r"[^\w]")


def _strip(word: str) -> str:
    return _PUNCTUATION.sub("", word)


def _contains_word(content: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", content) is not None


def _query_words(query: str) -> list[str]:
    tokens = [_strip(token) for token in query.split()]
    words = [t for t in tokens if len(t) > 2]
    # Short queries ("308gtsi", "my cat") keep their two-letter words too
    if len(words) <= 2:
        words.extend(t for t in tokens if len(t) == 2 and t not in words)
    return list(dict.fromkeys(words))


def _query_phrases(query: str) -> list[str]:
    tokens = [t for t in (_strip(token) for token in query.split()) if t]
    phrases = []
    for i in range(len(tokens) - 1):
        pair = tokens[i : i + 2]
        if all(len(t) > 1 for t in pair):
            phrases.append(" ".join(pair))
        triple = tokens[i : i + 3]
        if len(triple) == 3 and all(len(t) > 1 for t in triple):
            phrases.append(" ".join(triple))
    return phrases


def _model_matches(model: str, content: str, content_models: list[str]) -> bool:
    """Full brand-model in content, or its model number as a whole word ("the 308gtsi")."""
    if model in content or any(model in candidate for candidate in content_models):
        return True
    number = re.split(r"[\s-]", model)[-1]
    return number != model and _contains_word(content, number)


def _attribute_score(query: str, content: str) -> float | None:
    """Personal-attribute shortcut for questions like "what is my favorite car?"."""
    query_class = classify_query(query)
    if not query_class.is_question or not query_class.subject_hint:
        return None
    subject = query_class.subject_hint
    if not _contains_word(content, subject):
        return None
    if any(_contains_word(content, word) for word in ATTRIBUTE_WORDS):
        return ATTRIBUTE_MATCH_SCORE
    return SUBJECT_MATCH_SCORE


def score(query, content) -> float:
    """Keyword relevance in [0, 1]. Empty query or content scores 0."""
    if not isinstance(query, str) or not isinstance(content, str):
        return 0.0
    query = query.lower().strip()
    content = content.lower()
    if not query or not content.strip():
        return 0.0

    shortcut = _attribute_score(query, content)
    if shortcut is not None:
        return shortcut

    query_models = extract_brand_models(query)
    content_models = extract_brand_models(content)
    brand_score = sum(BRAND_MODEL_HIT for model in query_models if _model_matches(model, content, content_models))

    words = _query_words(query)
    phrases = _query_phrases(query)
    if not words and not phrases and brand_score == 0:
        return 0.0

    word_score = 0.0
    for word in words:
        if word not in content:
            continue
        word_score += WHOLE_WORD_HIT if _contains_word(content, word) else PARTIAL_WORD_HIT
        occurrences = content.count(word)
        if occurrences > 1:
            word_score += min(REPEAT_BONUS_CAP, (occurrences - 1) * REPEAT_BONUS_STEP)

    phrase_score = 0.0
    for phrase in phrases:
        position = content.find(phrase)
        if position < 0:
            continue
        phrase_score += PHRASE_HIT
        if position < EARLY_PHRASE_WINDOW:
            phrase_score += EARLY_PHRASE_BONUS

    normalized_words = word_score / max(1.0, len(words) * MAX_WORD_SCORE)
    normalized_phrases = phrase_score / max(1.0, len(phrases) * MAX_PHRASE_SCORE)
    normalized_brands = brand_score / max(1.0, len(query_models) * BRAND_MODEL_HIT)

    if brand_score > 0:
        combined = 0.7 * normalized_brands + 0.2 * normalized_phrases + 0.1 * normalized_words
    elif phrases:
        combined = 0.6 * normalized_phrases + 0.4 * normalized_words
    else:
        combined = normalized_words
    return min(1.0, max(0.0, combined))
