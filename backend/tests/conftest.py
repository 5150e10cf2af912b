"""Pytest configuration and shared fixtures.

No test talks to a live broker, Redis, Elasticsearch, JVM or model server:
HTTP adapters get an httpx.MockTransport, Redis is an in-memory MagicMock,
the document store is a recording fake, and the Korean tagger is a lookup
table standing in for Komoran.

IMPORTANT: Environment variables are set BEFORE any booksearch import so the
settings singleton picks them up.
"""
import sys
import os

# Add backend to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# =============================================================================
# CRITICAL: Set environment variables BEFORE any imports
# =============================================================================

os.environ.setdefault("ENABLE_PROMETHEUS_METRICS", "false")
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("GEMINI_URL", "http://gemini.test/v1beta/models/gemini:generateContent")
os.environ.setdefault("EMBEDDING_URL", "http://embedding.test/api/embeddings")
os.environ.setdefault("RERANKER_URL", "http://reranker.test/rerank")
os.environ.setdefault("ES_URL", "http://es.test:9200")
# No backoff sleeps between query-time retries
os.environ.setdefault("HTTP_RETRY_MIN_WAIT", "0")
os.environ.setdefault("HTTP_RETRY_MAX_WAIT", "0")

from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from booksearch.errors import StoreError
from booksearch.models import BookDocument, SearchCandidate
from booksearch.resilience import reset_all_circuit_breakers


EMBEDDING_DIM = 1024


def make_vector(size: int = EMBEDDING_DIM, value: float = 0.01) -> List[float]:
    return [value] * size


def make_candidate(isbn: str, title: Optional[str] = None, score: float = 1.0, description: str = "") -> SearchCandidate:
    return SearchCandidate(
        book=BookDocument(id=isbn, isbn=isbn, title=title or f"Book {isbn}", description=description),
        score=score,
    )


# =============================================================================
# Fake document store
# =============================================================================

class FakeBookStore:
    """In-memory DocumentStore that records every call.

    Attributes:
        sources: id -> _source dict returned by get_by_id
        upserts: (id, partial_doc) per upsert call
        deletes: ids passed to delete
        search_calls: (query, vector, limit) per hybrid_search call
        fail_get / fail_upsert: ids whose call raises StoreError
        search_error: raised by hybrid_search when set
    """

    def __init__(self):
        self.vector_field = "embedding"
        self.sources: Dict[str, Dict[str, Any]] = {}
        self.upserts: List[tuple] = []
        self.deletes: List[str] = []
        self.search_calls: List[tuple] = []
        self.isbn_lookups: List[str] = []
        self.search_results: List[SearchCandidate] = []
        self.fail_get = set()
        self.fail_upsert = set()
        self.search_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None

    def get_by_id(self, doc_id: str) -> Optional[Dict[str, Any]]:
        if doc_id in self.fail_get:
            raise StoreError(f"get {doc_id} failed", status_code=503)
        return self.sources.get(doc_id)

    def upsert(self, doc_id: str, partial_doc: Dict[str, Any]) -> None:
        if doc_id in self.fail_upsert:
            raise StoreError(f"upsert {doc_id} failed", status_code=503)
        self.upserts.append((doc_id, partial_doc))
        self.sources.setdefault(doc_id, {}).update(partial_doc)

    def delete(self, doc_id: str) -> bool:
        if self.delete_error is not None:
            raise self.delete_error
        self.deletes.append(doc_id)
        return self.sources.pop(doc_id, None) is not None

    def hybrid_search(self, query: str, vector, limit: Optional[int] = None) -> List[SearchCandidate]:
        self.search_calls.append((query, list(vector or []), limit))
        if self.search_error is not None:
            raise self.search_error
        return list(self.search_results)

    def find_by_isbn(self, isbn: str) -> Optional[BookDocument]:
        self.isbn_lookups.append(isbn)
        source = self.sources.get(isbn)
        if source is None:
            return None
        return BookDocument.model_validate({"id": isbn, "isbn": isbn, **source})


@pytest.fixture
def fake_store():
    return FakeBookStore()


# =============================================================================
# Fake Korean tagger
# =============================================================================

class FakeTagger:
    """Stands in for konlpy's Komoran: pos(text) -> [(morph, tag), ...].

    Known words are split into the morphemes Komoran would produce; any other
    word is tagged as a common noun (NNG), or SL when it is ASCII letters.
    """

    ANALYSES = {
        "추천": [("추천", "NNG")],
        "추천해줘": [("추천", "NNG"), ("하", "XSV"), ("아", "EC"), ("주", "VX"), ("어", "EF")],
        "해줘": [("하", "VV"), ("아", "EC"), ("주", "VX"), ("어", "EF")],
        "좀": [("좀", "MAG")],
        "책": [("책", "NNG")],
        "알려줘": [("알리", "VV"), ("어", "EC"), ("주", "VX"), ("어", "EF")],
        "안녕하세요": [("안녕", "NNG"), ("하", "XSV"), ("시", "EP"), ("어요", "EF")],
        "입문서": [("입문서", "NNG")],
        "어떤": [("어떤", "MM")],
        "를": [("를", "JKO")],
        "은": [("은", "JX")],
    }

    def __init__(self):
        self.calls: List[str] = []

    def pos(self, text: str):
        self.calls.append(text)
        tokens = []
        for word in text.split():
            if word in self.ANALYSES:
                tokens.extend(self.ANALYSES[word])
            elif word.isdigit():
                tokens.append((word, "SN"))
            elif word.isascii() and word.isalpha():
                tokens.append((word, "SL"))
            else:
                tokens.append((word, "NNG"))
        return tokens


@pytest.fixture
def fake_tagger():
    return FakeTagger()


# =============================================================================
# In-memory Redis
# =============================================================================

@pytest.fixture
def mock_redis():
    """Create a mock Redis client with in-memory storage."""
    storage = {}
    ttls = {}

    def mock_get(key):
        return storage.get(key)

    def mock_setex(key, ttl, value):
        storage[key] = value
        ttls[key] = ttl
        return True

    redis_mock = MagicMock()
    redis_mock.ping.return_value = True
    redis_mock.get = MagicMock(side_effect=mock_get)
    redis_mock.setex = MagicMock(side_effect=mock_setex)

    # Expose storage for test inspection
    redis_mock._storage = storage
    redis_mock._ttls = ttls
    return redis_mock


# =============================================================================
# Circuit breakers are module singletons; isolate tests from each other
# =============================================================================

@pytest.fixture(autouse=True)
def reset_breakers():
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()
