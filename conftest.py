"""Shared fixtures: isolated LanceDB per test and in-memory collaborators."""
# ruff: noqa: E402

import math
import os
import tempfile
from pathlib import Path

import pytest

# Small vectors keep the fakes readable; must be set before any project import
os.environ["EMBEDDING_DIM"] = "8"
os.environ.setdefault("RAGCHAT_DB_PATH", str(Path(tempfile.gettempdir()) / "ragchat-test-lancedb"))

import storage
from config import CONFIG
from errors import CompletionError, EmbeddingError, RemoteIndexNotFound
from remote_store import IndexInfo, IndexStats, RemoteMatch

DIM = CONFIG.embedding_dim


def basis(i: int) -> list[float]:
    """Unit vector along axis ``i``."""
    vector = [0.0] * DIM
    vector[i] = 1.0
    return vector


def with_similarity(similarity: float) -> list[float]:
    """Unit vector whose cosine similarity to ``basis(0)`` is ``similarity``."""
    vector = [0.0] * DIM
    vector[0] = similarity
    vector[1] = math.sqrt(max(0.0, 1 - similarity**2))
    return vector


@pytest.fixture(autouse=True)
def isolated_db(tmp_path):
    """Point CONFIG.db_path at a fresh directory and drop cached handles."""
    # Config is frozen=True
    object.__setattr__(CONFIG, "db_path", tmp_path / "lancedb")
    storage.reset()
    storage.init_database()
    yield
    storage.reset()


class FakeEmbedder:
    """Table-driven embedder; unknown text maps to the last axis."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, fail: bool = False):
        self.vectors = dict(vectors or {})
        self.fail = fail
        self.calls: list[tuple[str, str | None]] = []

    def embed(self, text: str, model_id: str | None = None) -> list[float]:
        self.calls.append((text, model_id))
        if self.fail:
            raise EmbeddingError("embedding provider down")
        return list(self.vectors.get(text, basis(DIM - 1)))


class RecordingCompleter:
    def __init__(self, reply: str = "Noted.", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.calls: list[dict] = []

    def complete(self, prompt: str, context: str, model_id: str | None = None) -> str:
        self.calls.append({"prompt": prompt, "context": context, "model_id": model_id})
        if self.fail:
            raise CompletionError("completion provider down")
        return self.reply


class FakeRemoteStore:
    """Dict-backed remote index: {index: {"dimension": int, "namespaces": {ns: {id: record}}}}."""

    def __init__(self, available: bool = True, configured: bool = True):
        self.available = available
        self.configured = configured
        self.indexes: dict[str, dict] = {}
        self.upsert_calls = 0

    def _get(self, name: str) -> dict:
        if name not in self.indexes:
            raise RemoteIndexNotFound(f"Index {name} not found")
        return self.indexes[name]

    def is_configured(self) -> bool:
        return self.configured

    def is_available(self) -> bool:
        return self.available

    def list_indexes(self) -> list[IndexInfo]:
        return [
            IndexInfo(
                name=name,
                dimension=index["dimension"],
                metric="cosine",
                ready=True,
                vector_count=sum(len(r) for r in index["namespaces"].values()),
                namespaces={ns: len(r) for ns, r in index["namespaces"].items()},
            )
            for name, index in self.indexes.items()
        ]

    def create_index(self, name: str, dimension: int, metric: str = "cosine") -> bool:
        self.indexes.setdefault(name, {"dimension": dimension, "namespaces": {}})
        return True

    def delete_index(self, name: str) -> None:
        self._get(name)
        del self.indexes[name]

    def upsert(self, index_name: str, namespace: str, records: list[dict]) -> int:
        self.upsert_calls += 1
        records_by_id = self._get(index_name)["namespaces"].setdefault(namespace, {})
        for record in records:
            records_by_id[record["id"]] = {
                "values": list(record["values"]),
                "metadata": dict(record.get("metadata", {})),
            }
        return len(records)

    def fetch(self, index_name: str, namespace: str, ids: list[str]) -> set[str]:
        records_by_id = self._get(index_name)["namespaces"].get(namespace, {})
        return {i for i in ids if i in records_by_id}

    def query_by_vector(self, index_name, namespace, vector, top_k, include_values=False) -> list[RemoteMatch]:
        records_by_id = self._get(index_name)["namespaces"].get(namespace, {})
        return [
            RemoteMatch(
                id=record_id,
                values=record["values"] if include_values else [],
                metadata=record["metadata"],
            )
            for record_id, record in list(records_by_id.items())[:top_k]
        ]

    def wipe_namespace(self, index_name: str, namespace: str) -> None:
        self._get(index_name)["namespaces"].pop(namespace, None)

    def describe_stats(self, index_name: str) -> IndexStats:
        index = self._get(index_name)
        namespaces = {ns: len(r) for ns, r in index["namespaces"].items()}
        return IndexStats(
            dimension=index["dimension"],
            total_vector_count=sum(namespaces.values()),
            namespaces=namespaces,
        )

    def seed(self, index_name: str, namespace: str, records: list[dict]) -> None:
        """Put records straight into an index, creating it if needed."""
        self.create_index(index_name, DIM)
        self.upsert(index_name, namespace, records)
        self.upsert_calls -= 1


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def completer():
    return RecordingCompleter()


@pytest.fixture
def remote():
    store = FakeRemoteStore()
    store.create_index("memories", DIM)
    return store
