"""Remote vector index: the protocol the sync engine talks to, and its Pinecone binding."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Protocol

from config import CONFIG
from errors import RemoteIndexNotFound, RemoteStoreError

if TYPE_CHECKING:
    from pinecone import Pinecone

logger = logging.getLogger(__name__)

READY_POLL_ATTEMPTS = 10
READY_POLL_INTERVAL = 5.0


@dataclass
class IndexStats:
    dimension: int
    total_vector_count: int
    namespaces: dict[str, int] = field(default_factory=dict)  # namespace -> record count


@dataclass
class IndexInfo:
    name: str
    dimension: int
    metric: str
    host: str = ""
    ready: bool = False
    vector_count: int = 0
    namespaces: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "dimension": self.dimension,
            "metric": self.metric,
            "host": self.host,
            "ready": self.ready,
            "vectorCount": self.vector_count,
            "namespaces": [{"name": k, "vectorCount": v} for k, v in self.namespaces.items()],
        }


@dataclass
class RemoteMatch:
    id: str
    values: list[float]
    metadata: dict[str, Any]
    score: float = 0.0


class RemoteVectorStore(Protocol):
    """Blocking interface; callers run it off the event loop."""

    def is_configured(self) -> bool: ...

    def is_available(self) -> bool: ...

    def list_indexes(self) -> list[IndexInfo]: ...

    def create_index(self, name: str, dimension: int, metric: str = "cosine") -> bool: ...

    def delete_index(self, name: str) -> None: ...

    def upsert(self, index_name: str, namespace: str, records: list[dict[str, Any]]) -> int: ...

    def fetch(self, index_name: str, namespace: str, ids: list[str]) -> set[str]: ...

    def query_by_vector(
        self,
        index_name: str,
        namespace: str,
        vector: list[float],
        top_k: int,
        include_values: bool = False,
    ) -> list[RemoteMatch]: ...

    def wipe_namespace(self, index_name: str, namespace: str) -> None: ...

    def describe_stats(self, index_name: str) -> IndexStats: ...


# =============================================================================
# Metadata encoding
# =============================================================================


def flatten_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Reduce metadata to the scalar / string-list values a remote index accepts.

    Nulls are dropped; nested objects and mixed lists become ``<key>_json`` strings.
    """
    flat: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            flat[key] = value
        elif isinstance(value, list) and all(isinstance(v, str) for v in value):
            flat[key] = value
        else:
            flat[f"{key}_json"] = json.dumps(value)
    return flat


def unflatten_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Inverse of ``flatten_metadata``. Undecodable ``_json`` values are kept as strings."""
    result: dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        if key.endswith("_json") and isinstance(value, str):
            try:
                result[key.removesuffix("_json")] = json.loads(value)
                continue
            except ValueError:
                pass
        result[key] = value
    return result


# =============================================================================
# Pinecone
# =============================================================================


def _get_api_key() -> str | None:
    """Get API key from environment or secrets file."""
    key = os.environ.get("PINECONE_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "PINECONE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    return None


@contextlib.contextmanager
def _translate_errors(index_name: str | None = None) -> Iterator[None]:
    from pinecone.exceptions import NotFoundException

    try:
        yield
    except NotFoundException as e:
        raise RemoteIndexNotFound(f"Index {index_name} not found") from e
    except RemoteStoreError:
        raise
    except Exception as e:
        raise RemoteStoreError(f"Remote vector store error: {e}") from e


def _status_ready(status: Any) -> bool:
    if status is None:
        return False
    if isinstance(status, dict):
        return bool(status.get("ready"))
    return bool(getattr(status, "ready", False))


class PineconeRemoteStore:
    """``RemoteVectorStore`` over a Pinecone project with serverless indexes."""

    def __init__(
        self,
        api_key: str | None = None,
        cloud: str = CONFIG.pinecone_cloud,
        region: str = CONFIG.pinecone_region,
        poll_interval: float = READY_POLL_INTERVAL,
    ):
        self._api_key = api_key
        self._cloud = cloud
        self._region = region
        self._poll_interval = poll_interval
        self._client: Pinecone | None = None
        self._lock = threading.RLock()

    def _get_client(self) -> Pinecone:
        """Get or create the Pinecone client (thread-safe)."""
        if self._client is None:
            with self._lock:
                if self._client is None:  # Double-check after acquiring lock
                    from pinecone import Pinecone

                    api_key = self._api_key or _get_api_key()
                    if not api_key:
                        raise RemoteStoreError(
                            "PINECONE_API_KEY not found. Set environment variable or create ~/.secrets/PINECONE_API_KEY"
                        )
                    self._client = Pinecone(api_key=api_key)
        return self._client

    def _index(self, name: str):
        return self._get_client().Index(name)

    def is_configured(self) -> bool:
        return bool(self._api_key or _get_api_key())

    def is_available(self) -> bool:
        if not self.is_configured():
            logger.info("Pinecone API key is not set")
            return False
        try:
            self._get_client().list_indexes()
        except Exception as e:
            logger.warning("Pinecone availability check failed: %s", e)
            return False
        return True

    def list_indexes(self) -> list[IndexInfo]:
        with _translate_errors():
            described = list(self._get_client().list_indexes())
        indexes = []
        for index in described:
            info = IndexInfo(
                name=index.name,
                dimension=index.dimension,
                metric=str(index.metric),
                host=getattr(index, "host", "") or "",
                ready=_status_ready(getattr(index, "status", None)),
            )
            try:
                stats = self.describe_stats(index.name)
                info.vector_count = stats.total_vector_count
                info.namespaces = stats.namespaces
            except RemoteStoreError as e:
                # Listed without stats, as for an index that is still initialising
                logger.warning("Could not read stats for index %s: %s", index.name, e)
            indexes.append(info)
        return indexes

    def create_index(self, name: str, dimension: int, metric: str = "cosine") -> bool:
        """Create a serverless index unless it exists. Returns whether it is ready."""
        from pinecone import ServerlessSpec

        client = self._get_client()
        with _translate_errors(name):
            if client.has_index(name):
                logger.info("Index %s already exists, skipping creation", name)
                return True
            client.create_index(
                name=name,
                dimension=dimension,
                metric=metric,
                spec=ServerlessSpec(cloud=self._cloud, region=self._region),
            )
            logger.info("Created Pinecone index %s (%d dims, %s)", name, dimension, metric)

            for _ in range(READY_POLL_ATTEMPTS):
                time.sleep(self._poll_interval)
                if _status_ready(client.describe_index(name).status):
                    logger.info("Pinecone index %s is ready", name)
                    return True
        logger.warning("Pinecone index %s not ready after %d polls", name, READY_POLL_ATTEMPTS)
        return False

    def delete_index(self, name: str) -> None:
        with _translate_errors(name):
            self._get_client().delete_index(name)
        logger.info("Deleted Pinecone index %s", name)

    def upsert(self, index_name: str, namespace: str, records: list[dict[str, Any]]) -> int:
        if not records:
            return 0
        vectors = [
            {"id": r["id"], "values": r["values"], "metadata": flatten_metadata(r.get("metadata", {}))}
            for r in records
        ]
        with _translate_errors(index_name):
            self._index(index_name).upsert(vectors=vectors, namespace=namespace)
        return len(vectors)

    def fetch(self, index_name: str, namespace: str, ids: list[str]) -> set[str]:
        """Which of ``ids`` already exist in the namespace."""
        if not ids:
            return set()
        with _translate_errors(index_name):
            response = self._index(index_name).fetch(ids=ids, namespace=namespace)
        return set(response.vectors or {})

    def query_by_vector(
        self,
        index_name: str,
        namespace: str,
        vector: list[float],
        top_k: int,
        include_values: bool = False,
    ) -> list[RemoteMatch]:
        with _translate_errors(index_name):
            response = self._index(index_name).query(
                vector=vector,
                top_k=top_k,
                namespace=namespace,
                include_values=include_values,
                include_metadata=True,
            )
        return [
            RemoteMatch(
                id=match.id,
                values=list(match.values or []),
                metadata=unflatten_metadata(match.metadata),
                score=match.score or 0.0,
            )
            for match in response.matches
        ]

    def wipe_namespace(self, index_name: str, namespace: str) -> None:
        with _translate_errors(index_name):
            self._index(index_name).delete(delete_all=True, namespace=namespace)
        logger.info("Wiped namespace %s of index %s", namespace, index_name)

    def describe_stats(self, index_name: str) -> IndexStats:
        with _translate_errors(index_name):
            stats = self._index(index_name).describe_index_stats()
        namespaces = {name: summary.vector_count for name, summary in (stats.namespaces or {}).items()}
        return IndexStats(
            dimension=stats.dimension,
            total_vector_count=stats.total_vector_count,
            namespaces=namespaces,
        )
