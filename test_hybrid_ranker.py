"""Tests for hybrid scoring, retention rules and display similarity."""

import pytest

from hybrid_ranker import calculate_hybrid_score, display_similarity, keyword_thresholds, rank
from models import RetrievedMemory


def make_memory(memory_id: int, content: str, similarity: float) -> RetrievedMemory:
    return RetrievedMemory(
        id=memory_id,
        content=content,
        type="prompt",
        timestamp="2026-01-01T00:00:00",
        similarity=similarity,
    )


class TestHybridScore:
    """Tests for calculate_hybrid_score."""

    def test_weighted_blend(self):
        assert calculate_hybrid_score(0.4, 0.95) == pytest.approx(0.62)

    def test_boost_when_both_strong(self):
        # 0.8 * 0.6 + 0.8 * 0.4 = 0.8, boost min(0.15, 1.6 * 0.075) = 0.12
        assert calculate_hybrid_score(0.8, 0.8) == pytest.approx(0.92)

    def test_boost_is_capped_and_score_is_capped(self):
        assert calculate_hybrid_score(1.0, 1.0) == 1.0

    def test_no_boost_at_boundary(self):
        assert calculate_hybrid_score(0.6, 0.9) == pytest.approx(0.72)

    def test_keyword_thresholds(self):
        assert keyword_thresholds(0.75) == pytest.approx((0.6, 0.45))
        assert keyword_thresholds(0.3) == pytest.approx((0.6, 0.4))
        assert keyword_thresholds(1.0) == pytest.approx((0.8, 0.6))


class TestRank:
    """Tests for rank."""

    def test_empty_input_returned_unchanged(self):
        assert rank("query", [], 0.75) == []
        memories = [make_memory(1, "anything", 0.9)]
        assert rank("", memories, 0.75) is memories

    def test_keyword_override_at_zero_vector_similarity(self):
        """An exact brand-model hit keeps a memory even with no vector support."""
        memories = [
            make_memory(1, "My favorite car is a Ferrari 308GTSi", 0.0),
            make_memory(2, "We had pasta for dinner", 0.0),
        ]
        ranked = rank("Ferrari 308GTSi specs", memories, 0.75)
        assert [m.id for m in ranked] == [1]
        assert ranked[0].original_similarity == 0.0
        assert ranked[0].keyword_score >= 0.6

    def test_vector_similarity_alone_retains(self):
        ranked = rank("unrelated words", [make_memory(1, "something else entirely", 0.8)], 0.75)
        assert len(ranked) == 1
        assert ranked[0].keyword_score == 0.0

    def test_favorite_car_scenario(self):
        memories = [make_memory(1, "My favorite car is a Ferrari 308GTSi", 0.40)]
        ranked = rank("What is my favorite car?", memories, "0.75")
        assert len(ranked) == 1
        assert ranked[0].keyword_score == pytest.approx(0.95)
        assert ranked[0].hybrid_score == pytest.approx(0.62)
        assert ranked[0].similarity == pytest.approx(0.62)

    def test_sorted_by_hybrid_score(self):
        memories = [
            make_memory(1, "the weather was mild", 0.80),
            make_memory(2, "the garden needs water", 0.95),
            make_memory(3, "garden party on sunday", 0.78),
        ]
        ranked = rank("garden", memories, 0.75)
        scores = [m.hybrid_score for m in ranked]
        assert scores == sorted(scores, reverse=True)
        assert ranked[0].id == 2

    def test_threshold_monotonicity(self):
        """Raising the threshold never grows the result set."""
        memories = [
            make_memory(i, content, similarity)
            for i, (content, similarity) in enumerate(
                [
                    ("my favorite car is a ferrari 308gtsi", 0.40),
                    ("the car broke down on the motorway", 0.55),
                    ("dinner with friends at the harbour", 0.62),
                    ("car insurance renewal is due", 0.71),
                    ("a long walk by the river", 0.83),
                    ("my favorite colour is green", 0.91),
                    ("nothing relevant here", 0.20),
                ]
            )
        ]
        sizes = [
            len(rank("what is my favorite car?", memories, t / 20))
            for t in range(0, 21)
        ]
        assert all(later <= earlier for earlier, later in zip(sizes, sizes[1:]))

    def test_no_memory_displays_exactly_one(self):
        memories = [make_memory(i, "ferrari 308gtsi ferrari 308gtsi", 1.0) for i in range(5)]
        ranked = rank("ferrari 308gtsi", memories, 0.75)
        assert len(ranked) == 5
        assert all(m.hybrid_score == 1.0 for m in ranked)
        assert all(0.98 < m.similarity <= 0.99 for m in ranked)
        assert all(round(m.similarity, 2) != 1.0 for m in ranked)

    def test_input_memories_are_not_mutated(self):
        memory = make_memory(1, "My favorite car is a Ferrari 308GTSi", 0.40)
        rank("What is my favorite car?", [memory], 0.75)
        assert memory.similarity == 0.40
        assert memory.hybrid_score is None


class TestDisplaySimilarity:
    """Tests for display_similarity."""

    def test_rounds_to_two_places(self):
        assert display_similarity(0.6249) == 0.62

    def test_near_perfect_scores_stay_below_one(self):
        for _ in range(50):
            value = display_similarity(0.999)
            assert 0.98 < value <= 0.99
