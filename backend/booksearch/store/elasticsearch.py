"""Book document store backed by the Elasticsearch REST API.

Documents are keyed by ISBN. Writes are partial upserts (`doc_as_upsert`) so a
message carrying only some fields never blanks the others, and deletes are
idempotent: deleting an id that is not in the index is reported, not raised.

Hybrid retrieval combines a weighted multi-field keyword match with an
approximate kNN clause over the embedding field. The kNN clause is only sent
when a non-empty query vector is available, so a failed query embedding
degrades to keyword-only search.

Usage:
    store = ElasticsearchBookStore()
    store.upsert("9791162244222", {"title": "...", "embedding": vector})
    candidates = store.hybrid_search("스프링 부트", vector, limit=50)
"""

import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from booksearch.config import settings
from booksearch.errors import StoreError
from booksearch.models import BookDocument, BookPayload, SearchCandidate
from booksearch.resilience import CircuitBreaker, elasticsearch_circuit_breaker

logger = logging.getLogger(__name__)

# Keyword fields and their boosts, most identifying first
KEYWORD_FIELDS = (
    "isbn^10.0",
    "title^5.0",
    "author^4.0",
    "categories^3.0",
    "publisher^2.0",
    "description^1.0",
)
ISBN_TERM_BOOST = 15.0
MINIMUM_SHOULD_MATCH = "2<75%"


def build_upsert_doc(
    book: BookPayload,
    vector: Optional[Sequence[float]],
    vector_field: str = settings.es_vector_field,
) -> Dict[str, Any]:
    """Partial document for a doc_as_upsert write.

    None values (and an empty category list) are left out so a partial
    message never blanks fields already in the index.
    """
    doc: Dict[str, Any] = {
        "isbn": book.isbn.strip() if book.isbn else None,
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "publisher": book.publisher,
        "description": book.description,
        "pubDate": book.pub_date.isoformat() if book.pub_date else None,
        "price": book.price,
        "categories": book.categories or None,
        "image_url": book.image_url,
        "publisherId": book.publisher_id,
        "categoryId": book.category_id,
        vector_field: list(vector) if vector else None,
    }
    return {key: value for key, value in doc.items() if value is not None}


def build_hybrid_query(
    query: str,
    vector: Optional[Sequence[float]],
    size: int,
    vector_field: str,
    analyzer: Optional[str] = None,
    num_candidates: int = 100,
    knn_boost: float = 3.0,
) -> Dict[str, Any]:
    """Build the `_search` body for hybrid keyword + vector retrieval.

    Args:
        query: Refined keyword query
        vector: Query embedding; the kNN clause is omitted when empty or None
        size: Number of hits to return (also used as kNN k)
        vector_field: Name of the dense_vector field
        analyzer: Search analyzer for the multi_match clause
        num_candidates: kNN candidates per shard
        knn_boost: Weight of the vector clause relative to keyword scoring

    Returns:
        Request body dict
    """
    multi_match: Dict[str, Any] = {
        "query": query,
        "fields": list(KEYWORD_FIELDS),
        "minimum_should_match": MINIMUM_SHOULD_MATCH,
    }
    if analyzer:
        multi_match["analyzer"] = analyzer

    body: Dict[str, Any] = {
        "size": size,
        "query": {
            "bool": {
                "should": [
                    {"multi_match": multi_match},
                    {"term": {"isbn": {"value": query, "boost": ISBN_TERM_BOOST}}},
                ]
            }
        },
        "_source": {"excludes": [vector_field]},
    }

    if vector:
        body["knn"] = {
            "field": vector_field,
            "query_vector": list(vector),
            "k": size,
            "num_candidates": max(num_candidates, size),
            "boost": knn_boost,
        }

    return body


class ElasticsearchBookStore:
    """DocumentStore implementation over Elasticsearch.

    Reads used by the query pipeline go through the elasticsearch circuit
    breaker (bounded retry on network/5xx/429). Writes used by the worker do
    not retry in-process: the message retry path owns that decision.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        index: Optional[str] = None,
        vector_field: Optional[str] = None,
        analyzer: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        breaker: Optional[CircuitBreaker] = elasticsearch_circuit_breaker,
    ):
        self.index = index or settings.es_index
        self.vector_field = vector_field or settings.es_vector_field
        self.analyzer = analyzer if analyzer is not None else settings.es_analyzer
        self._client = client or httpx.Client(
            base_url=base_url or settings.es_url,
            timeout=timeout_seconds or settings.es_timeout_seconds,
        )
        self._breaker = breaker

    def _path(self, endpoint: str, doc_id: Optional[str] = None) -> str:
        path = f"/{self.index}/{endpoint}"
        if doc_id is not None:
            path = f"{path}/{quote(str(doc_id), safe='')}"
        return path

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return self._client.request(method, path, json=json)
        except httpx.TransportError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise StoreError(
                f"{action} failed: HTTP {response.status_code} {response.text[:500]}",
                status_code=response.status_code,
            )

    # -------------------------------------------------------------------------
    # Writes (indexing worker)
    # -------------------------------------------------------------------------

    @staticmethod
    def _document_missing(response: httpx.Response) -> bool:
        """True for a 404 that reports an absent document.

        A missing index also answers 404 (index_not_found_exception); that is a
        store failure and must not read as "not found".
        """
        if response.status_code != 404:
            return False
        try:
            body = response.json()
        except ValueError:
            return False
        if not isinstance(body, dict):
            return False
        return body.get("found") is False or body.get("result") == "not_found"

    def get_by_id(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a document's _source, or None if it does not exist."""
        response = self._request("GET", self._path("_doc", doc_id))
        if self._document_missing(response):
            return None
        self._raise_for_status(response, f"get {doc_id}")
        return response.json().get("_source", {})

    def upsert(self, doc_id: str, partial_doc: Dict[str, Any]) -> None:
        """Merge partial_doc into the document, creating it if absent."""
        body = {"doc": partial_doc, "doc_as_upsert": True}
        response = self._request("POST", self._path("_update", doc_id), json=body)
        self._raise_for_status(response, f"upsert {doc_id}")

    def delete(self, doc_id: str) -> bool:
        """Delete a document by id.

        Returns:
            True if a document was deleted, False if it was already absent
        """
        response = self._request("DELETE", self._path("_doc", doc_id))
        if self._document_missing(response):
            logger.info(f"Delete of absent document ignored: id={doc_id}")
            return False
        self._raise_for_status(response, f"delete {doc_id}")
        return True

    # -------------------------------------------------------------------------
    # Reads (query pipeline)
    # -------------------------------------------------------------------------

    def _search(self, body: Dict[str, Any]) -> Dict[str, Any]:
        response = self._request("POST", self._path("_search"), json=body)
        self._raise_for_status(response, "search")
        return response.json()

    def _guarded(self, func, *args):
        if self._breaker is None:
            return func(*args)
        return self._breaker.call(func, *args)

    def hybrid_search(
        self,
        query: str,
        vector: Optional[Sequence[float]],
        limit: Optional[int] = None,
    ) -> List[SearchCandidate]:
        """Hybrid keyword + kNN retrieval, ordered by the store's relevance score."""
        size = limit or settings.search_fetch_size
        body = build_hybrid_query(
            query=query,
            vector=vector,
            size=size,
            vector_field=self.vector_field,
            analyzer=self.analyzer,
            num_candidates=settings.search_knn_num_candidates,
            knn_boost=settings.search_knn_boost,
        )
        data = self._guarded(self._search, body)
        return self._to_candidates(data)

    def find_by_isbn(self, isbn: str) -> Optional[BookDocument]:
        """Direct id lookup used for ISBN-shaped queries."""
        source = self._guarded(self.get_by_id, isbn)
        if source is None:
            return None
        return self._to_document(isbn, source)

    def _to_document(self, doc_id: Optional[str], source: Dict[str, Any]) -> BookDocument:
        source = {k: v for k, v in source.items() if k != self.vector_field}
        document = BookDocument.model_validate(source)
        if document.isbn is None:
            document.isbn = doc_id
        if document.id is None:
            document.id = doc_id
        return document

    def _to_candidates(self, data: Dict[str, Any]) -> List[SearchCandidate]:
        hits = (data.get("hits") or {}).get("hits") or []
        candidates = []
        for hit in hits:
            source = hit.get("_source")
            if not source:
                continue
            candidates.append(
                SearchCandidate(
                    book=self._to_document(hit.get("_id"), source),
                    score=float(hit.get("_score") or 0.0),
                )
            )
        return candidates

    def close(self) -> None:
        self._client.close()
