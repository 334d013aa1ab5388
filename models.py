"""Shared data models for ragchat-memory."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import CONFIG


class MemoryType(str, Enum):
    PROMPT = "prompt"
    RESPONSE = "response"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# =============================================================================
# LanceDB Schemas
# =============================================================================


class Memory(LanceModel):
    """Memory table schema for LanceDB.

    IMPORTANT: Any changes to this schema require migration of existing data.
    Vector dimension is fixed by CONFIG.embedding_dim at import time.
    """

    id: int  # monotonic, allocated by storage.next_id
    content: str
    vector: Vector(CONFIG.embedding_dim)  # type: ignore[valid-type]
    type: str  # MemoryType value
    message_id: int | None = None
    timestamp: str
    metadata: str = "{}"  # JSON object as string


class Message(LanceModel):
    id: int
    content: str
    role: str  # Role value
    timestamp: str
    model_id: str


class Settings(LanceModel):
    """Singleton row. Thresholds and factors are kept as text, the way users enter them."""

    id: int = 1
    context_size: int = 5
    similarity_threshold: str = "0.75"
    question_threshold_factor: str = "0.7"
    statement_threshold_factor: str = "0.85"
    default_model_id: str = CONFIG.llm_model
    default_embedding_model_id: str = CONFIG.embedding_model


class SyncState(LanceModel):
    id: int = 1
    is_enabled: bool = False
    active_index_name: str | None = None
    namespace: str = CONFIG.default_namespace
    vector_dimension: int = CONFIG.embedding_dim
    last_sync_timestamp: str | None = None


class SyncHistory(LanceModel):
    """One row per finished sync or hydrate."""

    id: int
    operation: str  # sync | hydrate
    index_name: str
    namespace: str
    success: bool
    count: int
    duplicate_count: int
    dedup_rate: float
    total_processed: int
    vector_count: int
    timestamp: str


# =============================================================================
# Transient models
# =============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RetrievedMemory(_CamelModel):
    """A memory plus its relevance for one retrieval call. Never persisted."""

    id: int
    content: str
    type: str
    message_id: int | None = None
    timestamp: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float
    original_similarity: float | None = None
    keyword_score: float | None = None
    hybrid_score: float | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any], similarity: float) -> RetrievedMemory:
        return cls(
            id=row["id"],
            content=row["content"],
            type=row["type"],
            message_id=row.get("message_id"),
            timestamp=row["timestamp"],
            metadata=load_metadata(row.get("metadata")),
            similarity=similarity,
        )


class SyncResult(_CamelModel):
    success: bool = True
    operation: str
    count: int = 0
    duplicate_count: int = 0
    dedup_rate: float = 0.0
    total_processed: int = 0
    vector_count: int = 0
    index_name: str
    namespace: str
    timestamp: str


def load_metadata(raw: str | dict | None) -> dict[str, Any]:
    """Decode the JSON metadata column; tolerate rows written by hand."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}
