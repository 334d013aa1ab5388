"""Memory persistence and similarity retrieval over the LanceDB memory table."""

from __future__ import annotations

import json
import logging
from typing import Any

import numpy as np

import keyword_scorer
import storage
from config import CONFIG
from errors import VectorQueryDegraded
from models import Memory, MemoryType, RetrievedMemory, Role
from utils import memory_id_for_upsert, normalize_threshold, now_iso

logger = logging.getLogger(__name__)

# Columns needed to build a RetrievedMemory; the vector stays on disk
MEMORY_COLUMNS = ["id", "content", "type", "message_id", "timestamp", "metadata"]

FALLBACK_SAMPLE_FACTOR = 5
FALLBACK_SAMPLE_MIN = 50
FALLBACK_SAMPLE_MAX = 500
FALLBACK_KEYWORD_SCALE = 0.9
RECENCY_SIMILARITY_START = 0.9
RECENCY_SIMILARITY_END = 0.5

PLACEHOLDER_CONTENT = "Imported memory from external source"


# =============================================================================
# CRUD
# =============================================================================


def create_memory(
    content: str,
    vector: list[float],
    memory_type: str,
    message_id: int | None = None,
    metadata: dict[str, Any] | None = None,
) -> Memory:
    """Insert a memory row.

    A ``message_id`` that points at no stored message gets a placeholder
    message, and the metadata records the id that was asked for.
    """
    memory_type = MemoryType(memory_type).value
    metadata = dict(metadata or {})

    if message_id is not None and storage.get_message(message_id) is None:
        role = Role.USER if memory_type == MemoryType.PROMPT.value else Role.ASSISTANT
        placeholder = storage.create_message(PLACEHOLDER_CONTENT, role.value, "unknown")
        logger.warning(
            "Message %s not found; memory attached to placeholder message %s", message_id, placeholder.id
        )
        metadata["originalMessageId"] = message_id
        metadata["importedWithPlaceholder"] = True
        message_id = placeholder.id

    memory = Memory(
        id=storage.next_id(storage.MEMORIES),
        content=content,
        vector=[float(v) for v in vector],
        type=memory_type,
        message_id=message_id,
        timestamp=now_iso(),
        metadata=json.dumps(metadata),
    )
    storage.get_table(storage.MEMORIES).add([memory.model_dump()])
    return memory


def get_memory(memory_id: int) -> RetrievedMemory | None:
    rows = (
        storage.get_table(storage.MEMORIES)
        .search()
        .where(f"id = {int(memory_id)}")
        .select(MEMORY_COLUMNS)
        .limit(1)
        .to_list()
    )
    return RetrievedMemory.from_row(rows[0], similarity=1.0) if rows else None


def count_memories() -> int:
    return storage.get_table(storage.MEMORIES).count_rows()


def _rows_newest_first(columns: list[str] | None = None) -> list[dict]:
    rows = storage.fetch_rows(storage.MEMORIES, columns=columns or MEMORY_COLUMNS)
    return sorted(rows, key=lambda r: r["id"], reverse=True)


def list_memories(page: int = 1, page_size: int = 10) -> tuple[list[RetrievedMemory], int]:
    """One page of memories, newest first, plus the total count."""
    page = max(1, int(page))
    page_size = max(1, int(page_size))
    rows = _rows_newest_first()
    start = (page - 1) * page_size
    memories = [RetrievedMemory.from_row(row, similarity=0.0) for row in rows[start : start + page_size]]
    return memories, len(rows)


def recent_memories(limit: int) -> list[RetrievedMemory]:
    if limit <= 0:
        return []
    return [RetrievedMemory.from_row(row, similarity=0.0) for row in _rows_newest_first()[:limit]]


def all_memories(limit: int | None = None) -> list[dict]:
    """Raw rows including vectors, newest first. Used by the sync engine."""
    rows = _rows_newest_first(columns=[*MEMORY_COLUMNS, "vector"])
    return rows[:limit] if limit is not None else rows


def content_keys() -> set[str]:
    """Upsert keys of every stored memory."""
    rows = storage.fetch_rows(storage.MEMORIES, columns=["content", "type"])
    return {memory_id_for_upsert(row["content"], row["type"]) for row in rows}


def clear_all_memories() -> dict[str, int]:
    """Delete every memory and message. The count covers both tables."""
    table = storage.get_table(storage.MEMORIES)
    memory_count = table.count_rows()
    if memory_count:
        table.delete("id >= 0")
    message_count = storage.clear_messages()
    logger.info("Cleared %d memories and %d messages", memory_count, message_count)
    return {"count": memory_count + message_count}


# =============================================================================
# Similarity retrieval
# =============================================================================


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator == 0:
        return 0.0
    return float(np.dot(a, b) / denominator)


def _vector_search(
    vector: list[float], limit: int, threshold: float, exclude_id: int | None
) -> list[RetrievedMemory]:
    if len(vector) != CONFIG.embedding_dim:
        raise VectorQueryDegraded(
            f"Query vector has {len(vector)} dimensions, expected {CONFIG.embedding_dim}"
        )
    try:
        search = storage.get_table(storage.MEMORIES).search(vector).distance_type("cosine")
        if exclude_id is not None:
            search = search.where(f"id != {int(exclude_id)}", prefilter=True)
        rows = search.select(MEMORY_COLUMNS).limit(limit).to_list()
    except Exception as e:
        raise VectorQueryDegraded(f"Vector search failed: {e}") from e

    results = []
    for row in rows:
        similarity = 1 - row["_distance"]
        if similarity >= threshold:
            results.append(RetrievedMemory.from_row(row, similarity=similarity))
    results.sort(key=lambda m: m.similarity, reverse=True)
    return results[:limit]


def _latest_prompt_text() -> str | None:
    rows = storage.fetch_rows(
        storage.MEMORIES, where=f"type = '{MemoryType.PROMPT.value}'", columns=["id", "content"]
    )
    if not rows:
        return None
    newest = max(rows, key=lambda r: r["id"])
    return newest["content"] or None


def _fallback_search(
    limit: int, threshold: float, exclude_id: int | None, query_text: str | None
) -> list[RetrievedMemory]:
    sample_size = min(max(FALLBACK_SAMPLE_FACTOR * limit, FALLBACK_SAMPLE_MIN), FALLBACK_SAMPLE_MAX)
    rows = [row for row in _rows_newest_first() if row["id"] != exclude_id]

    text = query_text or _latest_prompt_text()
    if text:
        scored = []
        for row in rows[:sample_size]:
            similarity = keyword_scorer.score(text, row["content"]) * FALLBACK_KEYWORD_SCALE
            if similarity >= threshold:
                scored.append(RetrievedMemory.from_row(row, similarity=similarity))
        scored.sort(key=lambda m: m.similarity, reverse=True)
        logger.warning("Keyword fallback returned %d memories", min(len(scored), limit))
        return scored[:limit]

    recent = rows[: min(limit, len(rows))]
    similarities = np.linspace(RECENCY_SIMILARITY_START, RECENCY_SIMILARITY_END, len(recent))
    logger.warning("No query text available; recency fallback returned %d memories", len(recent))
    return [RetrievedMemory.from_row(row, similarity=float(s)) for row, s in zip(recent, similarities)]


def query_by_embedding(
    vector: list[float],
    limit: int,
    similarity_threshold,
    exclude_id: int | None = None,
    query_text: str | None = None,
) -> list[RetrievedMemory]:
    """Memories whose cosine similarity to ``vector`` meets the threshold, best first.

    When the vector path fails the store degrades to keyword scoring against
    ``query_text`` (or the newest prompt memory), and without any text to
    pure recency. Never raises; the worst case is an empty list.
    """
    threshold = normalize_threshold(similarity_threshold)
    limit = max(0, int(limit))
    if limit == 0:
        return []

    try:
        if count_memories() == 0:
            return []
        try:
            return _vector_search(vector, limit, threshold, exclude_id)
        except VectorQueryDegraded as e:
            logger.warning("Vector query degraded, using fallback: %s", e)
            return _fallback_search(limit, threshold, exclude_id, query_text)
    except Exception as e:
        logger.error("Memory query failed: %s", e)
        return []


def query_by_keywords(
    query_text: str,
    vector: list[float],
    limit: int,
    min_keyword_score: float,
    exclude_id: int | None = None,
) -> list[RetrievedMemory]:
    """Lexical candidate sweep over recent memories.

    Keeps memories whose keyword score reaches ``min_keyword_score``. Each
    result carries its real cosine similarity to ``vector`` so the hybrid
    ranker sees the same signal it would get from the vector path.
    """
    if not query_text or limit <= 0:
        return []
    try:
        query = np.asarray(vector, dtype=np.float32)
        candidates = []
        for row in all_memories(limit=FALLBACK_SAMPLE_MAX):
            if row["id"] == exclude_id:
                continue
            keyword = keyword_scorer.score(query_text, row["content"])
            if keyword < min_keyword_score:
                continue
            stored = np.asarray(row["vector"], dtype=np.float32)
            similarity = _cosine(query, stored) if stored.shape == query.shape else 0.0
            candidates.append((keyword, RetrievedMemory.from_row(row, similarity=max(0.0, similarity))))
    except Exception as e:
        logger.error("Keyword sweep failed: %s", e)
        return []

    candidates.sort(key=lambda pair: pair[0], reverse=True)
    return [memory for _, memory in candidates[:limit]]
