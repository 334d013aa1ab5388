"""Tests for memory persistence and similarity retrieval."""

import json
from types import SimpleNamespace

import pytest

import memory_store
import storage
from conftest import basis, with_similarity
from errors import VectorQueryDegraded
from models import load_metadata


def add(content: str, vector=None, memory_type: str = "prompt", message_id=None, metadata=None):
    return memory_store.create_memory(content, vector or basis(7), memory_type, message_id, metadata)


@pytest.fixture
def broken_vector_search(monkeypatch):
    """Force every query down the fallback path."""

    def fail(*args, **kwargs):
        raise VectorQueryDegraded("vector index unavailable")

    monkeypatch.setattr(memory_store, "_vector_search", fail)


class TestCreateMemory:
    """Tests for create_memory and the CRUD helpers."""

    def test_ids_are_monotonic(self):
        first = add("first")
        second = add("second")
        assert second.id == first.id + 1

    def test_existing_message_is_kept(self):
        message = storage.create_message("hello", "user", "test-model")
        memory = add("hello", message_id=message.id)
        assert memory.message_id == message.id
        assert json.loads(memory.metadata) == {}

    def test_missing_message_gets_placeholder(self):
        memory = add("imported thought", memory_type="response", message_id=4242)
        assert memory.message_id != 4242
        placeholder = storage.get_message(memory.message_id)
        assert placeholder is not None
        assert placeholder.role == "assistant"
        metadata = load_metadata(memory.metadata)
        assert metadata["originalMessageId"] == 4242
        assert metadata["importedWithPlaceholder"] is True

    def test_invalid_type_rejected(self):
        with pytest.raises(ValueError):
            add("bad", memory_type="note")

    def test_get_memory(self):
        memory = add("find me", metadata={"source": "test"})
        found = memory_store.get_memory(memory.id)
        assert found.content == "find me"
        assert found.metadata == {"source": "test"}
        assert memory_store.get_memory(9999) is None

    def test_list_memories_paginates_newest_first(self):
        for i in range(12):
            add(f"memory {i}")
        page_one, total = memory_store.list_memories(1, 5)
        page_three, _ = memory_store.list_memories(3, 5)
        assert total == 12
        assert [m.content for m in page_one] == [f"memory {i}" for i in range(11, 6, -1)]
        assert [m.content for m in page_three] == ["memory 1", "memory 0"]

    def test_recent_memories(self):
        for i in range(4):
            add(f"memory {i}")
        assert [m.content for m in memory_store.recent_memories(2)] == ["memory 3", "memory 2"]
        assert memory_store.recent_memories(0) == []

    def test_clear_all_memories_counts_both_tables(self):
        message = storage.create_message("hello", "user", "test-model")
        add("hello", message_id=message.id)
        add("world", message_id=message.id)
        assert memory_store.clear_all_memories() == {"count": 3}
        assert memory_store.count_memories() == 0
        assert storage.count_messages() == 0

    def test_content_keys_ignore_case_and_padding(self):
        add("  Hello There ")
        add("hello there")
        add("hello there", memory_type="response")
        assert len(memory_store.content_keys()) == 2


class TestQueryByEmbedding:
    """Tests for the primary vector path."""

    def test_filters_by_threshold_and_orders(self):
        add("close", with_similarity(0.9))
        add("closer", with_similarity(0.95))
        add("far", with_similarity(0.3))
        results = memory_store.query_by_embedding(basis(0), 10, 0.5)
        assert [m.content for m in results] == ["closer", "close"]
        assert results[0].similarity == pytest.approx(0.95, abs=1e-4)

    def test_self_exclusion(self):
        """The memory created for a query never matches itself."""
        own = add("what is my favorite car?", basis(0))
        add("other", with_similarity(0.8))
        results = memory_store.query_by_embedding(basis(0), 10, 0.1, exclude_id=own.id)
        assert own.id not in [m.id for m in results]
        assert [m.content for m in results] == ["other"]

    def test_percent_threshold(self):
        add("close", with_similarity(0.9))
        add("medium", with_similarity(0.8))
        results = memory_store.query_by_embedding(basis(0), 10, "85%")
        assert [m.content for m in results] == ["close"]

    def test_invalid_threshold_defaults(self):
        add("close", with_similarity(0.8))
        add("medium", with_similarity(0.7))
        results = memory_store.query_by_embedding(basis(0), 10, "not a number")
        assert [m.content for m in results] == ["close"]

    def test_limit(self):
        for i in range(6):
            add(f"memory {i}", with_similarity(0.9))
        assert len(memory_store.query_by_embedding(basis(0), 3, 0.5)) == 3

    def test_empty_store(self):
        assert memory_store.query_by_embedding(basis(0), 5, 0.5) == []


class TestFallback:
    """Tests for the degraded paths."""

    def test_recency_fallback_without_query_text(self, broken_vector_search):
        for i in range(5):
            add(f"response {i}", memory_type="response")
        results = memory_store.query_by_embedding(basis(0), 3, 0.75)
        assert [m.content for m in results] == ["response 4", "response 3", "response 2"]
        similarities = [m.similarity for m in results]
        assert similarities[0] == pytest.approx(0.9)
        assert all(a > b for a, b in zip(similarities, similarities[1:]))

    def test_recency_fallback_returns_what_is_available(self, broken_vector_search):
        for i in range(2):
            add(f"response {i}", memory_type="response")
        results = memory_store.query_by_embedding(basis(0), 10, 0.75)
        assert len(results) == 2
        assert [m.similarity for m in results] == pytest.approx([0.9, 0.5])

    def test_malformed_query_vector_degrades(self):
        for i in range(3):
            add(f"response {i}", memory_type="response")
        results = memory_store.query_by_embedding([1.0, 0.0], 2, 0.75)
        assert [m.similarity for m in results] == pytest.approx([0.9, 0.5])

    def test_keyword_fallback_with_query_text(self, broken_vector_search):
        add("My favorite car is a Ferrari 308GTSi", memory_type="response")
        add("We had pasta for dinner", memory_type="response")
        results = memory_store.query_by_embedding(basis(0), 5, 0.5, query_text="What is my favorite car?")
        assert [m.content for m in results] == ["My favorite car is a Ferrari 308GTSi"]
        assert results[0].similarity == pytest.approx(0.95 * 0.9)

    def test_keyword_fallback_uses_latest_prompt(self, broken_vector_search):
        add("My favorite car is a Ferrari 308GTSi", memory_type="response")
        own = add("What is my favorite car?")
        results = memory_store.query_by_embedding(basis(0), 5, 0.5, exclude_id=own.id)
        assert [m.content for m in results] == ["My favorite car is a Ferrari 308GTSi"]

    def test_never_raises(self, monkeypatch):
        add("something")

        def broken_table(name):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(storage, "get_table", broken_table)
        assert memory_store.query_by_embedding(basis(0), 5, 0.5) == []


class TestQueryByKeywords:
    """Tests for the lexical candidate sweep."""

    def test_returns_true_cosine_similarity(self):
        add("My favorite car is a Ferrari 308GTSi", with_similarity(0.4))
        add("We had pasta for dinner", with_similarity(0.9))
        results = memory_store.query_by_keywords("What is my favorite car?", basis(0), 10, 0.45)
        assert [m.content for m in results] == ["My favorite car is a Ferrari 308GTSi"]
        assert results[0].similarity == pytest.approx(0.4, abs=1e-4)

    def test_excludes_given_id(self):
        own = add("What is my favorite car?", basis(0))
        assert memory_store.query_by_keywords("What is my favorite car?", basis(0), 10, 0.4, exclude_id=own.id) == []

    def test_empty_query(self):
        add("anything")
        assert memory_store.query_by_keywords("", basis(0), 10, 0.4) == []


class RecordingDb:
    """Connection whose tables never open, so get_table must decide whether to create."""

    def __init__(self, existing: list[str], has_list_tables: bool = True):
        self.existing = existing
        self.created: list[str] = []
        self.legacy_calls = 0
        self.has_list_tables = has_list_tables

    def open_table(self, name):
        raise ValueError(f"cannot open {name}")

    def list_tables(self):
        if not self.has_list_tables:
            raise AttributeError("list_tables")
        return SimpleNamespace(tables=self.existing)

    def table_names(self):
        self.legacy_calls += 1
        return self.existing

    def create_table(self, name, schema):
        self.created.append(name)
        return SimpleNamespace(name=name)


class TestGetTable:
    """Tests for storage.get_table."""

    @pytest.fixture
    def db(self, monkeypatch):
        db = RecordingDb(existing=[storage.MESSAGES])
        storage.reset()
        monkeypatch.setattr(storage, "_db", db)
        return db

    def test_missing_table_is_created_via_list_tables(self, db):
        assert storage.get_table(storage.MEMORIES).name == storage.MEMORIES
        assert db.created == [storage.MEMORIES]
        assert db.legacy_calls == 0

    def test_existing_table_that_fails_to_open_raises(self, db):
        with pytest.raises(ValueError):
            storage.get_table(storage.MESSAGES)
        assert db.created == []

    def test_falls_back_to_table_names(self, monkeypatch):
        db = RecordingDb(existing=[], has_list_tables=False)
        storage.reset()
        monkeypatch.setattr(storage, "_db", db)
        storage.get_table(storage.MEMORIES)
        assert db.legacy_calls == 1
        assert db.created == [storage.MEMORIES]
