"""Scoring and response assembly for the query pipeline."""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from booksearch.config import settings
from booksearch.models import AiResult, BookDocument, BookResponse, SearchCandidate, SearchResponse


def _as_score(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def apply_rerank_scores(
    candidates: Sequence[SearchCandidate],
    scores: Sequence[Mapping[str, Any]],
    limit: int,
) -> List[SearchCandidate]:
    """Replace retrieval scores with reranker scores and re-sort.

    Only the first `limit` candidates were sent to the reranker. Each provider
    entry is matched to its candidate by "index" when present, otherwise by
    its position in the response. Reranked candidates without a usable score,
    and every candidate beyond `limit`, get 0. The sort is stable, so ties
    keep retrieval order.
    """
    target = min(len(candidates), limit)
    by_index: Dict[int, float] = {}
    for position, entry in enumerate(scores):
        index = entry.get("index", position)
        score = _as_score(entry.get("score"))
        if isinstance(index, bool) or not isinstance(index, int) or score is None:
            continue
        if 0 <= index < target and index not in by_index:
            by_index[index] = score

    ranked = [
        SearchCandidate(book=candidate.book, score=by_index.get(i, 0.0))
        for i, candidate in enumerate(candidates)
    ]
    ranked.sort(key=lambda c: c.score, reverse=True)
    return ranked


def neutral_scores(candidates: Sequence[SearchCandidate], score: float) -> List[SearchCandidate]:
    """Rerank fallback: same candidates, same order, one fixed score."""
    return [SearchCandidate(book=c.book, score=score) for c in candidates]


def to_response(book: BookDocument, match_rate: float, ai_answer: Optional[str] = None) -> BookResponse:
    return BookResponse(
        id=book.id,
        isbn=book.isbn,
        title=book.title,
        author=book.author,
        publisher=book.publisher,
        price=book.price,
        description=book.description,
        categories=list(book.categories),
        image_url=book.image_url,
        ai_answer=ai_answer,
        match_rate=match_rate,
        publisher_id=book.publisher_id,
        category_id=book.category_id,
    )


def assemble_ai_result(
    ranked: Sequence[SearchCandidate],
    ai_results: Mapping[str, AiResult],
    cap: Optional[int] = None,
) -> SearchResponse:
    """Merge LLM judgements into the reranked list.

    Books the LLM judged take its matchRate and reason; the rest keep their
    rerank-stage score and no answer.
    """
    cap = cap or settings.search_result_cap
    items = []
    for candidate in ranked:
        result = ai_results.get(candidate.book.isbn) if candidate.book.isbn else None
        if result is not None:
            items.append(to_response(candidate.book, float(result.match_rate), result.reason))
        else:
            items.append(to_response(candidate.book, candidate.score))
    items.sort(key=lambda item: item.match_rate, reverse=True)
    return SearchResponse(book_list=items[:cap])


def assemble_basic_result(
    candidates: Sequence[SearchCandidate],
    default_score: Optional[float] = None,
    cap: Optional[int] = None,
) -> SearchResponse:
    """Retrieval order, one default score for every book."""
    cap = cap or settings.search_result_cap
    score = settings.basic_search_default_score if default_score is None else default_score
    return SearchResponse(
        book_list=[to_response(c.book, score) for c in list(candidates)[:cap]]
    )
