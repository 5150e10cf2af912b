"""Tests for rerank score mapping and response assembly."""

import pytest

from booksearch.models import AiResult, BookDocument
from booksearch.search.assembler import (
    apply_rerank_scores,
    assemble_ai_result,
    assemble_basic_result,
    neutral_scores,
    to_response,
)

from tests.conftest import make_candidate

pytestmark = pytest.mark.unit


def isbns(items):
    return [item.book.isbn if hasattr(item, "book") else item.isbn for item in items]


class TestApplyRerankScores:
    def test_maps_by_index(self):
        candidates = [make_candidate(i) for i in "ABC"]
        scores = [{"index": 2, "score": 0.9}, {"index": 0, "score": 0.5}, {"index": 1, "score": 0.1}]

        ranked = apply_rerank_scores(candidates, scores, limit=10)

        assert isbns(ranked) == ["C", "A", "B"]
        assert [c.score for c in ranked] == [0.9, 0.5, 0.1]

    def test_maps_by_position_without_index(self):
        candidates = [make_candidate(i) for i in "AB"]

        ranked = apply_rerank_scores(candidates, [{"score": 0.2}, {"score": 0.8}], limit=10)

        assert isbns(ranked) == ["B", "A"]

    def test_candidates_beyond_limit_score_zero(self):
        candidates = [make_candidate(i, score=100) for i in "ABCD"]
        scores = [{"index": 0, "score": 0.3}, {"index": 1, "score": 0.4}, {"index": 3, "score": 0.99}]

        ranked = apply_rerank_scores(candidates, scores, limit=2)

        assert isbns(ranked) == ["B", "A", "C", "D"]
        assert [c.score for c in ranked] == [0.4, 0.3, 0.0, 0.0]

    def test_unusable_entries_are_ignored(self):
        candidates = [make_candidate(i) for i in "AB"]
        scores = [
            {"index": 0, "score": "high"},
            {"index": True, "score": 0.9},
            {"index": -1, "score": 0.9},
            {"index": 1, "score": 0.6},
            {"index": 1, "score": 0.1},
        ]

        ranked = apply_rerank_scores(candidates, scores, limit=10)

        assert [(c.book.isbn, c.score) for c in ranked] == [("B", 0.6), ("A", 0.0)]

    def test_ties_keep_retrieval_order(self):
        candidates = [make_candidate(i) for i in "ABC"]
        ranked = apply_rerank_scores(candidates, [{"index": i, "score": 0.5} for i in range(3)], limit=10)
        assert isbns(ranked) == ["A", "B", "C"]


def test_neutral_scores_keep_order_and_size():
    candidates = [make_candidate(i, score=s) for i, s in zip("ABC", (3.0, 9.0, 1.0))]

    neutral = neutral_scores(candidates, 0.5)

    assert isbns(neutral) == ["A", "B", "C"]
    assert {c.score for c in neutral} == {0.5}


class TestAssembleAiResult:
    def test_ai_results_override_and_sort(self):
        ranked = [make_candidate("A", score=0.9), make_candidate("B", score=0.8), make_candidate("C", score=0.7)]
        ai_results = {"C": AiResult(reason="가장 적합", match_rate=97), "A": AiResult(reason="보통", match_rate=40)}

        response = assemble_ai_result(ranked, ai_results, cap=50)

        assert isbns(response.book_list) == ["C", "A", "B"]
        assert [b.match_rate for b in response.book_list] == [97.0, 40.0, 0.8]
        assert [b.ai_answer for b in response.book_list] == ["가장 적합", "보통", None]

    def test_cap_applies_after_sorting(self):
        ranked = [make_candidate(str(i), score=0.1) for i in range(5)]
        response = assemble_ai_result(ranked, {"4": AiResult(reason="r", match_rate=90)}, cap=2)

        assert isbns(response.book_list) == ["4", "0"]

    def test_empty(self):
        assert assemble_ai_result([], {}, cap=5).book_list == []


class TestAssembleBasicResult:
    def test_default_score_and_order(self):
        candidates = [make_candidate("A", score=5), make_candidate("B", score=9)]

        response = assemble_basic_result(candidates, default_score=50.0)

        assert isbns(response.book_list) == ["A", "B"]
        assert [b.match_rate for b in response.book_list] == [50.0, 50.0]

    def test_cap(self):
        candidates = [make_candidate(str(i)) for i in range(5)]
        assert len(assemble_basic_result(candidates, cap=3).book_list) == 3


def test_to_response_serialises_camel_case():
    book = BookDocument(id="1", isbn="A", title="t", categories=["IT"], image_url="http://img", publisher_id=3)

    data = to_response(book, 88.0, "이유").model_dump(by_alias=True)

    assert data["aiAnswer"] == "이유"
    assert data["matchRate"] == 88.0
    assert data["imageUrl"] == "http://img"
    assert data["publisherId"] == 3
    assert data["categories"] == ["IT"]
