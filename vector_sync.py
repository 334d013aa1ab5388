"""Push local memories to a remote vector index and pull them back.

Both directions key records by content (``memory_id_for_upsert``), so
repeating an operation over unchanged data adds nothing. At most one sync or
hydrate runs at a time; a second request is rejected, not queued.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import threading
from typing import Any, Iterator

import memory_store
import storage
from config import CONFIG
from errors import (
    ConcurrentOperationRejected,
    RemoteStoreUnavailable,
    ValidationError,
)
from models import MemoryType, Role, SyncHistory, SyncResult, load_metadata
from remote_store import IndexStats, RemoteMatch, RemoteVectorStore
from utils import memory_id_for_upsert, now_iso

logger = logging.getLogger(__name__)

SYNC = "sync"
HYDRATE = "hydrate"
SCAN_VALUE = 0.0001
CREATE_INDEX_TIMEOUT = 90.0  # covers the ready polling after creation


class SyncGate:
    """Process-wide single-writer gate for sync and hydrate."""

    def __init__(self):
        self._lock = threading.Lock()
        self._current: str | None = None

    @property
    def current(self) -> str | None:
        return self._current

    def try_acquire(self, operation: str) -> bool:
        with self._lock:
            if self._current is not None:
                return False
            self._current = operation
            return True

    def release(self) -> None:
        with self._lock:
            self._current = None


def _dedup_rate(duplicates: int, total: int) -> float:
    return round(duplicates / total * 100, 2) if total else 0.0


def _batches(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _history_to_result(row: SyncHistory | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return SyncResult(**row.model_dump(exclude={"id"})).model_dump(by_alias=True)


class VectorSyncEngine:
    def __init__(
        self,
        remote: RemoteVectorStore,
        gate: SyncGate | None = None,
        timeout: float = CONFIG.remote_timeout,
        batch_size: int = CONFIG.sync_batch_size,
    ):
        self.remote = remote
        self.gate = gate or SyncGate()
        self.timeout = timeout
        self.batch_size = batch_size
        # Worker threads whose call timed out but which are still talking to the remote
        self._abandoned: set[asyncio.Future] = set()

    async def _call(self, fn, *args, timeout: float | None = None, **kwargs):
        """Run a blocking remote call off the event loop, bounded by the remote timeout.

        A timeout does not stop the worker thread; it is tracked until it
        finishes so the gate is not released underneath it.
        """
        worker = asyncio.ensure_future(asyncio.to_thread(fn, *args, **kwargs))
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=timeout or self.timeout)
        except asyncio.TimeoutError as e:
            self._abandoned.add(worker)
            worker.add_done_callback(self._forget_worker)
            raise RemoteStoreUnavailable(f"Remote vector store timed out in {fn.__name__}") from e

    def _forget_worker(self, worker: asyncio.Future) -> None:
        self._abandoned.discard(worker)
        if not worker.cancelled() and worker.exception() is not None:
            logger.warning("Timed-out remote call failed later: %s", worker.exception())

    @contextlib.asynccontextmanager
    async def _exclusive(self, operation: str):
        """Hold the gate for one sync or hydrate, including any call still running after a timeout."""
        if not self.gate.try_acquire(operation):
            raise ConcurrentOperationRejected(operation, self.gate.current or "another")
        try:
            yield
        finally:
            pending = [worker for worker in self._abandoned if not worker.done()]
            if pending:
                logger.warning(
                    "%s keeps the gate until %d timed-out remote call(s) finish", operation, len(pending)
                )
                waiter = asyncio.gather(*pending, return_exceptions=True)
                waiter.add_done_callback(lambda _: self.gate.release())
            else:
                self.gate.release()

    async def _require_available(self) -> None:
        if not await self._call(self.remote.is_available):
            raise RemoteStoreUnavailable("Remote vector store is unavailable")

    async def _require_index(self, index_name: str) -> IndexStats:
        await self._require_available()
        return await self._call(self.remote.describe_stats, index_name)

    def _finish(self, result: SyncResult) -> SyncResult:
        storage.record_sync_history(result.model_dump())
        storage.update_sync_state(
            is_enabled=True,
            active_index_name=result.index_name,
            namespace=result.namespace,
            last_sync_timestamp=result.timestamp,
        )
        logger.info(
            "%s %s/%s: %d new, %d duplicate (%.2f%%) of %d, remote holds %d",
            result.operation.capitalize(),
            result.index_name,
            result.namespace,
            result.count,
            result.duplicate_count,
            result.dedup_rate,
            result.total_processed,
            result.vector_count,
        )
        return result

    # -------------------------------------------------------------------------
    # Sync (local -> remote)
    # -------------------------------------------------------------------------

    async def sync(
        self, index_name: str, namespace: str = CONFIG.default_namespace, limit: int = CONFIG.sync_limit
    ) -> SyncResult:
        async with self._exclusive(SYNC):
            await self._require_index(index_name)

            rows = memory_store.all_memories(limit)
            records: dict[str, dict[str, Any]] = {}
            duplicates = 0
            for row in rows:
                key = memory_id_for_upsert(row["content"], row["type"])
                if key in records:
                    duplicates += 1
                    continue
                records[key] = {
                    "id": key,
                    "values": [float(v) for v in row["vector"]],
                    "metadata": {
                        "id": row["id"],
                        "content": row["content"],
                        "type": row["type"],
                        "messageId": row["message_id"],
                        "timestamp": row["timestamp"],
                        "metadata": load_metadata(row["metadata"]),
                    },
                }

            for batch in _batches(list(records.values()), self.batch_size):
                existing = await self._call(
                    self.remote.fetch, index_name, namespace, [r["id"] for r in batch]
                )
                duplicates += len(existing)
                # Existing keys are overwritten in place
                await self._call(self.remote.upsert, index_name, namespace, batch)

            stats = await self._call(self.remote.describe_stats, index_name)
            total = len(rows)
            return self._finish(
                SyncResult(
                    operation=SYNC,
                    count=total - duplicates,
                    duplicate_count=duplicates,
                    dedup_rate=_dedup_rate(duplicates, total),
                    total_processed=total,
                    vector_count=stats.namespaces.get(namespace, 0),
                    index_name=index_name,
                    namespace=namespace,
                    timestamp=now_iso(),
                )
            )

    # -------------------------------------------------------------------------
    # Hydrate (remote -> local)
    # -------------------------------------------------------------------------

    async def hydrate(
        self, index_name: str, namespace: str = CONFIG.default_namespace, limit: int = CONFIG.sync_limit
    ) -> SyncResult:
        async with self._exclusive(HYDRATE):
            stats = await self._require_index(index_name)
            available = stats.namespaces.get(namespace, 0)
            if available == 0 or limit <= 0:
                logger.info("Namespace %s of %s is empty, nothing to hydrate", namespace, index_name)
                return self._finish(
                    SyncResult(operation=HYDRATE, index_name=index_name, namespace=namespace, timestamp=now_iso())
                )

            # The remote has no "list all"; a near-zero query vector returns everything up to top_k
            scan_vector = [SCAN_VALUE] * stats.dimension
            matches = await self._call(
                self.remote.query_by_vector,
                index_name,
                namespace,
                scan_vector,
                min(limit, available),
                include_values=True,
            )

            keys = memory_store.content_keys()
            placeholders: dict[str, int] = {}
            added = duplicates = 0
            for match in matches:
                try:
                    if self._hydrate_one(match, index_name, keys, placeholders):
                        added += 1
                    else:
                        duplicates += 1
                except Exception as e:
                    logger.warning("Skipping remote record %s: %s", match.id, e)

            total = len(matches)
            return self._finish(
                SyncResult(
                    operation=HYDRATE,
                    count=added,
                    duplicate_count=duplicates,
                    dedup_rate=_dedup_rate(duplicates, total),
                    total_processed=total,
                    vector_count=available,
                    index_name=index_name,
                    namespace=namespace,
                    timestamp=now_iso(),
                )
            )

    def _hydrate_one(
        self, match: RemoteMatch, index_name: str, keys: set[str], placeholders: dict[str, int]
    ) -> bool:
        """Insert one remote record. Returns False when it is already stored locally."""
        metadata = match.metadata or {}
        content = metadata.get("content") or f"Memory imported from remote index: {index_name}"
        memory_type = MemoryType(metadata.get("type") or MemoryType.PROMPT.value).value

        vector = [float(v) for v in match.values]
        if len(vector) != CONFIG.embedding_dim:
            raise ValidationError(f"vector has {len(vector)} dimensions, expected {CONFIG.embedding_dim}")
        if not all(math.isfinite(v) for v in vector):
            raise ValidationError("vector contains non-finite values")

        key = memory_id_for_upsert(content, memory_type)
        if key in keys:
            return False

        original_id = metadata.get("messageId")
        message_id = self._resolve_message(original_id, memory_type, metadata, index_name, placeholders)

        extra = metadata.get("metadata")
        memory_store.create_memory(
            content,
            vector,
            memory_type,
            message_id,
            metadata={
                **(extra if isinstance(extra, dict) else {}),
                "importedFrom": index_name,
                "originalMessageId": original_id,
                "importTimestamp": now_iso(),
                "contentHash": key,
            },
        )
        keys.add(key)
        return True

    def _resolve_message(
        self,
        original_id: Any,
        memory_type: str,
        metadata: dict[str, Any],
        index_name: str,
        placeholders: dict[str, int],
    ) -> int:
        """Reuse the referenced message, or create one; each missing or invalid id gets one placeholder."""
        content = metadata.get("content")
        role = Role.USER.value if memory_type == MemoryType.PROMPT.value else Role.ASSISTANT.value
        model_id = str(metadata.get("modelId") or "unknown")

        if original_id is not None:
            key = str(original_id)
            if key in placeholders:
                return placeholders[key]
            try:
                local_id = int(original_id)
            except (TypeError, ValueError):
                local_id = None
            if local_id is not None and storage.get_message(local_id) is not None:
                return local_id
            message = storage.create_message(
                content or f"Placeholder for message ID {original_id}", role, model_id
            )
            placeholders[key] = message.id
            logger.info("Created placeholder message %d for missing message %s", message.id, original_id)
            return message.id

        message = storage.create_message(
            content or f"Imported memory from remote index: {index_name}", role, model_id
        )
        return message.id

    # -------------------------------------------------------------------------
    # State and index management
    # -------------------------------------------------------------------------

    def get_sync_state(self) -> dict[str, Any]:
        state = storage.get_sync_state()
        return {
            "currentOperation": self.gate.current or "none",
            "isEnabled": state.is_enabled,
            "activeIndexName": state.active_index_name,
            "namespace": state.namespace,
            "lastSyncTimestamp": state.last_sync_timestamp,
            "lastSyncResult": _history_to_result(storage.latest_sync_history(SYNC)),
            "lastHydrateResult": _history_to_result(storage.latest_sync_history(HYDRATE)),
        }

    async def list_indexes(self) -> list[dict[str, Any]]:
        await self._require_available()
        indexes = await self._call(self.remote.list_indexes)
        return [index.to_dict() for index in indexes]

    async def create_index(
        self, name: str, dimension: int = CONFIG.embedding_dim, metric: str = "cosine"
    ) -> dict[str, Any]:
        if not name:
            raise ValidationError("Index name is required")
        if dimension <= 0:
            raise ValidationError(f"dimension must be positive, got {dimension}")
        await self._require_available()
        ready = await self._call(
            self.remote.create_index, name, dimension, metric, timeout=CREATE_INDEX_TIMEOUT
        )
        return {"name": name, "dimension": dimension, "metric": metric, "ready": ready}

    async def delete_index(self, name: str) -> dict[str, Any]:
        await self._require_available()
        await self._call(self.remote.delete_index, name)
        state = storage.get_sync_state()
        if state.active_index_name == name:
            storage.update_sync_state(is_enabled=False, active_index_name=None)
        return {"name": name, "deleted": True}

    async def wipe_namespace(self, index_name: str, namespace: str = CONFIG.default_namespace) -> dict[str, Any]:
        await self._require_index(index_name)
        await self._call(self.remote.wipe_namespace, index_name, namespace)
        return {"indexName": index_name, "namespace": namespace, "wiped": True}

    async def status(self) -> dict[str, Any]:
        """Whether the remote answers right now; never raises."""
        configured = self.remote.is_configured()
        try:
            available = configured and bool(await self._call(self.remote.is_available))
        except RemoteStoreUnavailable:
            available = False
        return {
            "available": available,
            "status": "connected" if available else "disconnected",
            "configured": configured,
        }

    async def inspect_vectors(
        self, index_name: str, namespace: str = CONFIG.default_namespace, limit: int = 100
    ) -> dict[str, Any]:
        """Records stored in one namespace: ids, dimensions and metadata, without the values."""
        if limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}")
        stats = await self._require_index(index_name)
        available = stats.namespaces.get(namespace, 0)
        matches = []
        if available:
            matches = await self._call(
                self.remote.query_by_vector,
                index_name,
                namespace,
                [SCAN_VALUE] * stats.dimension,
                min(limit, available),
                include_values=True,
            )
        return {
            "indexName": index_name,
            "namespace": namespace,
            "count": len(matches),
            "vectors": [
                {
                    "id": match.id,
                    "valuesDimension": len(match.values),
                    "metadata": match.metadata,
                }
                for match in matches
            ],
        }

    def reset_metrics(self) -> dict[str, Any]:
        """Zero the duplicate figures of the last sync and hydrate; counts are kept."""
        reset = storage.reset_sync_metrics((SYNC, HYDRATE))
        logger.info("Dedup metrics reset for %s", ", ".join(reset) or "nothing")
        return {"reset": reset}
