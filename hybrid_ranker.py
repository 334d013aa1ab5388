"""Hybrid ranking: vector similarity blended with keyword relevance."""

from __future__ import annotations

import logging
import random

import keyword_scorer
from models import RetrievedMemory
from utils import normalize_threshold

logger = logging.getLogger(__name__)

VECTOR_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4
BOOST_CAP = 0.15
BOOST_RATE = 0.075
HYBRID_RELAXATION = 0.85
DISPLAY_CEILING = 0.99
DISPLAY_JITTER = 0.01


def calculate_hybrid_score(vector_similarity: float, keyword_score: float) -> float:
    """Weighted blend, boosted by up to 0.15 when both signals are strong."""
    combined = vector_similarity * VECTOR_WEIGHT + keyword_score * KEYWORD_WEIGHT
    if vector_similarity > 0.6 and keyword_score > 0.5:
        boost = min(BOOST_CAP, (vector_similarity + keyword_score) * BOOST_RATE)
        return min(1.0, combined + boost)
    return combined


def keyword_thresholds(threshold: float) -> tuple[float, float]:
    """(strong, moderate) keyword thresholds derived from the similarity threshold."""
    return max(0.6, threshold * 0.8), max(0.4, threshold * 0.6)


def display_similarity(hybrid_score: float) -> float:
    """Round for display; near-perfect scores land just under 0.99 so no two read 100%."""
    rounded = round(hybrid_score, 2)
    if rounded >= 0.995:
        return DISPLAY_CEILING - random.uniform(0, DISPLAY_JITTER)
    return rounded


def rank(query: str, memories: list[RetrievedMemory], similarity_threshold) -> list[RetrievedMemory]:
    """Score, filter and sort retrieved memories.

    A memory is kept when its raw vector similarity meets the threshold, when
    its hybrid score meets the relaxed threshold with at least moderate
    keyword support, or when its keyword score alone is strong.
    """
    if not memories or not query:
        return memories

    threshold = normalize_threshold(similarity_threshold)
    adjusted = threshold * HYBRID_RELAXATION
    strong, moderate = keyword_thresholds(threshold)

    kept = []
    for memory in memories:
        vector_similarity = memory.similarity
        keyword = keyword_scorer.score(query, memory.content)
        hybrid = calculate_hybrid_score(vector_similarity, keyword)
        if (
            vector_similarity >= threshold
            or (hybrid >= adjusted and keyword >= moderate)
            or keyword >= strong
        ):
            kept.append(
                memory.model_copy(
                    update={
                        "original_similarity": vector_similarity,
                        "keyword_score": keyword,
                        "hybrid_score": hybrid,
                    }
                )
            )

    kept.sort(key=lambda m: m.hybrid_score, reverse=True)
    for memory in kept:
        memory.similarity = display_similarity(memory.hybrid_score)

    logger.info(
        "Hybrid ranking kept %d of %d memories (threshold %.2f, adjusted %.2f, strong %.2f, moderate %.2f)",
        len(kept),
        len(memories),
        threshold,
        adjusted,
        strong,
        moderate,
    )
    return kept
