"""Client for the external cross-encoder reranking server.

The server scores (query, text) pairs and answers with one entry per input
text:

    POST {"query": "...", "texts": ["...", "..."]}
    -> [{"index": 1, "score": 0.97}, {"index": 0, "score": 0.12}]

Entries may come back sorted by score rather than in input order, which is why
each one carries the index of the text it scores.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from booksearch.config import settings
from booksearch.errors import ProviderError, RateLimitError, RerankingError
from booksearch.models import BookDocument
from booksearch.resilience import CircuitBreaker, reranker_circuit_breaker
from booksearch.text_utils import strip_html

logger = logging.getLogger(__name__)

RERANK_DESCRIPTION_CHARS = 50


def build_rerank_text(book: BookDocument) -> str:
    """Short summary sent to the reranker: title plus the start of the description."""
    description = strip_html(book.description)[:RERANK_DESCRIPTION_CHARS]
    return f"{book.title or ''} {description}"


class RerankingClient:
    """Scores candidate texts against a query."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        breaker: Optional[CircuitBreaker] = reranker_circuit_breaker,
    ):
        self.url = url or settings.reranker_url
        self._client = client or httpx.Client(
            timeout=timeout_seconds or settings.reranker_timeout_seconds
        )
        self._breaker = breaker

    def _request(self, query: str, texts: List[str]) -> Any:
        response = self._client.post(self.url, json={"query": query, "texts": texts})
        if response.status_code == 429:
            raise RateLimitError("reranker", response.text[:500])
        if response.status_code >= 400:
            raise ProviderError(
                "reranker", f"HTTP {response.status_code} {response.text[:500]}",
                status_code=response.status_code,
            )
        return response.json()

    def rerank(self, query: str, texts: Sequence[str]) -> List[Dict[str, Any]]:
        """Score texts against query.

        Returns:
            Provider entries, each a dict with "score" and usually "index"

        Raises:
            RerankingError: Any provider, transport or decoding failure, or a
                response that is not a list
        """
        texts = list(texts)
        logger.info(f"Rerank request: query='{query}', docs={len(texts)}")
        try:
            if self._breaker is not None:
                data = self._breaker.call(self._request, query, texts)
            else:
                data = self._request(query, texts)
        except Exception as e:
            raise RerankingError(f"Rerank API call failed: {e}") from e

        if not isinstance(data, list):
            raise RerankingError(f"Unexpected rerank response type: {type(data).__name__}")
        return [entry for entry in data if isinstance(entry, dict)]

    def rerank_books(self, query: str, books: Sequence[BookDocument]) -> List[Dict[str, Any]]:
        return self.rerank(query, [build_rerank_text(book) for book in books])

    def close(self) -> None:
        self._client.close()
