#!/usr/bin/env python3
"""
RAG Chat Memory MCP Server

Conversational memory for a chat assistant, exposed as MCP tools:
- FastMCP for the tool surface (stdio transport)
- LanceDB for local memories, messages, settings and sync state
- Hybrid ranking: cosine similarity blended with keyword relevance
- Ollama embeddings with Google Gemini fallback, Gemini completions
- Pinecone as the remote archive (sync / hydrate)
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import Any

from mcp.server.fastmcp import FastMCP

import memory_store
import storage
from config import CONFIG
from errors import ProviderError, RagChatError, ValidationError
from orchestrator import ChatOrchestrator
from providers import DefaultEmbedder, GeminiCompleter
from remote_store import PineconeRemoteStore
from vector_sync import VectorSyncEngine

logger = logging.getLogger(__name__)

TURN_FAILURE_MESSAGE = "Sorry, I couldn't generate a response right now. Please try again."
MAX_PAGE_SIZE = 100

# =============================================================================
# Collaborators (lazy singletons)
# =============================================================================

_lock = threading.RLock()
_orchestrator: ChatOrchestrator | None = None
_sync_engine: VectorSyncEngine | None = None


def get_orchestrator() -> ChatOrchestrator:
    """Get or create the chat orchestrator (thread-safe)."""
    global _orchestrator
    if _orchestrator is None:
        with _lock:
            if _orchestrator is None:  # Double-check after acquiring lock
                _orchestrator = ChatOrchestrator(DefaultEmbedder(), GeminiCompleter(), use_case=CONFIG.use_case)
    return _orchestrator


def get_sync_engine() -> VectorSyncEngine:
    """Get or create the sync engine and its single-writer gate (thread-safe)."""
    global _sync_engine
    if _sync_engine is None:
        with _lock:
            if _sync_engine is None:  # Double-check after acquiring lock
                _sync_engine = VectorSyncEngine(PineconeRemoteStore())
    return _sync_engine


def _require_name(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


# =============================================================================
# MCP Server & Tools
# =============================================================================

mcp = FastMCP(
    "ragchat-memory",
    instructions="Chat with long-term memory: hybrid (vector + keyword) retrieval over past turns, with a remote archive",
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def chat_submit(content: str, model_id: str | None = None) -> dict[str, Any]:
    """Send a chat message and get a reply grounded in relevant past conversation.

    Args:
        content: The user's message
        model_id: Completion model; defaults to the configured model
    """
    try:
        result = await get_orchestrator().submit_chat_turn(content, model_id)
    except ProviderError as e:
        logger.error("Chat turn failed: %s", e)
        return {"success": False, "status": e.status, "code": e.code, "error": TURN_FAILURE_MESSAGE}
    except RagChatError as e:
        return e.to_dict()
    return {"success": True, **result}


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_list(page: int = 1, page_size: int = 10) -> dict[str, Any]:
    """List stored memories, newest first.

    Args:
        page: 1-based page number
        page_size: Memories per page (max 100)
    """
    if page <= 0:
        return ValidationError(f"page must be positive, got {page}").to_dict()
    if page_size <= 0 or page_size > MAX_PAGE_SIZE:
        return ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}").to_dict()
    memories, total = memory_store.list_memories(page, page_size)
    return {
        "success": True,
        "memories": [m.model_dump(by_alias=True, exclude_none=True) for m in memories],
        "total": total,
        "page": page,
        "pageSize": page_size,
    }


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_clear() -> dict[str, Any]:
    """Delete every memory and message. Returns how many rows were removed."""
    result = memory_store.clear_all_memories()
    return {"success": True, **result}


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_stats() -> dict[str, Any]:
    """Get memory statistics: counts by type, index status, database size, settings."""
    rows = storage.fetch_rows(storage.MEMORIES, columns=["type"])
    by_type: dict[str, int] = {}
    for row in rows:
        by_type[row["type"]] = by_type.get(row["type"], 0) + 1

    has_vector_index = False
    try:
        indices = storage.get_table(storage.MEMORIES).list_indices()
        has_vector_index = any("ivf" in str(idx).lower() for idx in indices)
    except Exception as e:
        logger.warning("Could not list indices: %s", e)

    db_size = sum(f.stat().st_size for f in CONFIG.db_path.rglob("*") if f.is_file()) / 1024
    settings = storage.get_settings()
    return {
        "success": True,
        "totalMemories": len(rows),
        "totalMessages": storage.count_messages(),
        "byType": by_type,
        "vectorIndex": "IVF-PQ" if has_vector_index else "flat",
        "databaseKb": round(db_size, 1),
        "settings": settings.model_dump(exclude={"id"}),
    }


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def remote_sync(index_name: str, namespace: str = CONFIG.default_namespace) -> dict[str, Any]:
    """Push local memories to a remote index. Re-syncing unchanged content adds nothing.

    Args:
        index_name: Remote index to write to
        namespace: Namespace within the index
    """
    try:
        result = await get_sync_engine().sync(_require_name(index_name, "index_name"), namespace)
    except RagChatError as e:
        return e.to_dict()
    return result.model_dump(by_alias=True)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def remote_hydrate(
    index_name: str, namespace: str = CONFIG.default_namespace, limit: int = CONFIG.sync_limit
) -> dict[str, Any]:
    """Pull memories from a remote index into local storage, skipping ones already stored.

    Args:
        index_name: Remote index to read from
        namespace: Namespace within the index
        limit: Maximum records to pull
    """
    try:
        if limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}")
        result = await get_sync_engine().hydrate(_require_name(index_name, "index_name"), namespace, limit)
    except RagChatError as e:
        return e.to_dict()
    return result.model_dump(by_alias=True)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def remote_sync_state() -> dict[str, Any]:
    """Current sync operation (if any), active index and the last sync / hydrate results."""
    return {"success": True, **get_sync_engine().get_sync_state()}


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def remote_status() -> dict[str, Any]:
    """Check whether the remote archive is configured and reachable."""
    return {"success": True, **await get_sync_engine().status()}


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def remote_vectors(
    index_name: str, namespace: str = CONFIG.default_namespace, limit: int = 100
) -> dict[str, Any]:
    """Inspect the records stored in one namespace of a remote index.

    Args:
        index_name: Index name
        namespace: Namespace within the index
        limit: Maximum records to return
    """
    try:
        result = await get_sync_engine().inspect_vectors(_require_name(index_name, "index_name"), namespace, limit)
    except RagChatError as e:
        return e.to_dict()
    return {"success": True, **result}


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def remote_metrics_reset() -> dict[str, Any]:
    """Reset the duplicate counts and dedup rates shown for the last sync and hydrate."""
    return {"success": True, **get_sync_engine().reset_metrics()}


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def message_history(limit: int = 50) -> dict[str, Any]:
    """Recent chat messages, oldest first.

    Args:
        limit: Maximum messages to return (max 100)
    """
    if limit <= 0 or limit > MAX_PAGE_SIZE:
        return ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}").to_dict()
    messages = storage.recent_messages(limit)
    return {"success": True, "messages": [m.model_dump() for m in messages], "total": storage.count_messages()}


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def remote_indexes() -> dict[str, Any]:
    """List remote indexes with their vector counts per namespace."""
    try:
        indexes = await get_sync_engine().list_indexes()
    except RagChatError as e:
        return e.to_dict()
    return {"success": True, "indexes": indexes}


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def remote_index_create(
    name: str, dimension: int = CONFIG.embedding_dim, metric: str = "cosine"
) -> dict[str, Any]:
    """Create a remote index (no-op if it already exists).

    Args:
        name: Index name
        dimension: Vector dimension; must match the embedding dimension to be usable
        metric: cosine, euclidean or dotproduct
    """
    try:
        if metric not in ("cosine", "euclidean", "dotproduct"):
            raise ValidationError(f"Unsupported metric: {metric}")
        result = await get_sync_engine().create_index(_require_name(name, "name"), dimension, metric)
    except RagChatError as e:
        return e.to_dict()
    return {"success": True, **result}


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def remote_index_delete(name: str) -> dict[str, Any]:
    """Delete a remote index and everything in it.

    Args:
        name: Index name
    """
    try:
        result = await get_sync_engine().delete_index(_require_name(name, "name"))
    except RagChatError as e:
        return e.to_dict()
    return {"success": True, **result}


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def remote_namespace_wipe(index_name: str, namespace: str = CONFIG.default_namespace) -> dict[str, Any]:
    """Delete every record in one namespace of a remote index.

    Args:
        index_name: Index name
        namespace: Namespace to wipe
    """
    try:
        result = await get_sync_engine().wipe_namespace(_require_name(index_name, "index_name"), namespace)
    except RagChatError as e:
        return e.to_dict()
    return {"success": True, **result}


# =============================================================================
# Server Entry Point
# =============================================================================


def configure_logging(level: int = logging.INFO) -> None:
    """Log to stderr; stdout carries the MCP stdio transport."""
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="[ragchat] %(levelname)s %(name)s: %(message)s",
    )


async def run_server():
    """Run the MCP server after database initialization."""
    storage.init_database()
    await mcp.run_stdio_async()


def main():
    """Entry point."""
    configure_logging()
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
