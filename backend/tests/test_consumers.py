"""Tests for the indexing consumers and the shared consume contract.

Consumers run against the recording FakeBookStore; the embedding gateway and
bulk analyzer are MagicMocks so each test states exactly what the provider
answered.
"""

import json
from unittest.mock import MagicMock

import pytest

from booksearch.errors import EmbeddingError, ErrorCode, ProviderError, RateLimitError
from booksearch.models import AiResult, AnalysisMode, BookAiReview
from booksearch.worker.consumers import (
    AiAnalysisProcessor,
    DeleteProcessor,
    MessageConsumer,
    UpsertProcessor,
)
from booksearch.worker.retry import (
    HDR_ERROR_CODE,
    HDR_RETRY_COUNT,
    Envelope,
    RetryDispatcher,
    RetryOutcome,
    RetryPolicy,
    Route,
)

from tests.conftest import make_vector

pytestmark = pytest.mark.unit


def as_envelope(payload, retry_count=None) -> Envelope:
    headers = {} if retry_count is None else {HDR_RETRY_COUNT: retry_count}
    body = payload if isinstance(payload, bytes) else json.dumps(payload, ensure_ascii=False).encode()
    return Envelope(body=body, headers=headers, delivery_tag=1)


@pytest.fixture
def dispatcher():
    return RetryDispatcher(RetryPolicy(max_attempts=3, rate_limit_delay_ms=86_400_000, error_message_max_chars=2000))


@pytest.fixture
def embedding():
    gateway = MagicMock()
    gateway.embed.return_value = make_vector()
    return gateway


@pytest.fixture
def analyzer():
    return MagicMock()


def upsert_message(isbn="X", **book):
    book.setdefault("title", "토비의 스프링")
    return {"requestId": "req-1", "book": {"isbn": isbn, **book}, "ts": 1700000000000}


# =============================================================================
# Upsert
# =============================================================================

class TestUpsertConsumer:
    def test_embeds_and_upserts_once(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        disposition = consumer.handle(as_envelope(upsert_message("X", author="이일민")))

        assert disposition.succeeded
        assert not disposition.republish
        assert len(fake_store.upserts) == 1
        doc_id, doc = fake_store.upserts[0]
        assert doc_id == "X"
        assert len(doc["embedding"]) == 1024
        assert doc["title"] == "토비의 스프링"
        assert doc["author"] == "이일민"

    def test_embedding_input_is_labelled_text(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        consumer.handle(as_envelope(upsert_message("X", publisher="에이콘", description="<p>스프링 입문</p>")))

        text = embedding.embed.call_args[0][0]
        assert text == "[TITLE]\n토비의 스프링\n\n[PUBLISHER]\n에이콘\n\n[DESCRIPTION]\n스프링 입문"

    def test_blank_pub_date_is_dropped(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        disposition = consumer.handle(as_envelope(b'{"requestId":"r","book":{"isbn":"X","title":"t","pubDate":""}}'))

        assert disposition.succeeded
        assert len(fake_store.upserts) == 1
        assert "pubDate" not in fake_store.upserts[0][1]

    def test_pub_date_with_time_part_is_kept(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        consumer.handle(as_envelope(upsert_message("X", pubDate="2021-03-02T09:00:00")))

        assert fake_store.upserts[0][1]["pubDate"] == "2021-03-02"

    def test_isbn_is_trimmed(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        consumer.handle(as_envelope(upsert_message("  979-11  ")))

        assert fake_store.upserts[0][0] == "979-11"

    def test_blank_isbn_is_invalid(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        disposition = consumer.handle(as_envelope(upsert_message("  ")))

        assert disposition.error.code == ErrorCode.INVALID_MESSAGE
        assert disposition.outcome == RetryOutcome.RETRY
        embedding.embed.assert_not_called()
        assert fake_store.upserts == []

    def test_no_text_fields_is_invalid(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)
        message = {"book": {"isbn": "X", "title": " ", "description": "<br/>"}}

        disposition = consumer.handle(as_envelope(message))

        assert disposition.error.code == ErrorCode.INVALID_MESSAGE
        embedding.embed.assert_not_called()

    def test_undecodable_body_is_invalid(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        disposition = consumer.handle(as_envelope(b"{not json"))

        assert disposition.error.code == ErrorCode.INVALID_MESSAGE
        assert disposition.route == Route.RETRY

    def test_embedding_failure_is_retried(self, fake_store, embedding, dispatcher):
        embedding.embed.side_effect = EmbeddingError("dimension mismatch: expected 1024, got 3")
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        disposition = consumer.handle(as_envelope(upsert_message(), retry_count=1))

        assert disposition.outcome == RetryOutcome.RETRY
        assert disposition.envelope.headers[HDR_RETRY_COUNT] == 2
        assert fake_store.upserts == []

    def test_store_failure_at_max_goes_dead(self, fake_store, embedding, dispatcher):
        fake_store.fail_upsert.add("X")
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)

        disposition = consumer.handle(as_envelope(upsert_message("X"), retry_count=3))

        assert disposition.route == Route.DEAD
        assert disposition.envelope.headers[HDR_ERROR_CODE] == "STORE_ERROR"

    def test_replay_is_idempotent(self, fake_store, embedding, dispatcher):
        consumer = MessageConsumer(UpsertProcessor(fake_store, embedding), dispatcher)
        envelope = as_envelope(upsert_message("X"))

        consumer.handle(envelope)
        consumer.handle(envelope)

        assert [doc_id for doc_id, _ in fake_store.upserts] == ["X", "X"]
        assert fake_store.upserts[0][1] == fake_store.upserts[1][1]


# =============================================================================
# Delete
# =============================================================================

class TestDeleteConsumer:
    def test_deletes_by_isbn(self, fake_store, dispatcher):
        fake_store.sources["X"] = {"title": "t"}
        consumer = MessageConsumer(DeleteProcessor(fake_store), dispatcher)

        disposition = consumer.handle(as_envelope({"isbn": " X ", "requestId": "r"}))

        assert disposition.succeeded
        assert fake_store.deletes == ["X"]
        assert "X" not in fake_store.sources

    def test_absent_document_is_success(self, fake_store, dispatcher):
        consumer = MessageConsumer(DeleteProcessor(fake_store), dispatcher)

        disposition = consumer.handle(as_envelope({"isbn": "missing"}))

        assert disposition.succeeded
        assert not disposition.republish

    def test_blank_isbn_is_invalid(self, fake_store, dispatcher):
        consumer = MessageConsumer(DeleteProcessor(fake_store), dispatcher)

        disposition = consumer.handle(as_envelope({"isbn": None}))

        assert disposition.error.code == ErrorCode.INVALID_MESSAGE
        assert fake_store.deletes == []


# =============================================================================
# Batch AI analysis
# =============================================================================

class TestAiAnalysisConsumer:
    def test_only_returned_isbns_are_updated(self, fake_store, analyzer, dispatcher):
        fake_store.sources.update({"A": {"title": "책 A"}, "B": {"title": "책 B"}})
        analyzer.analyze_bulk.return_value = {
            "A": BookAiReview(pros=["쉬운 설명"], cons=["분량"], recommended_for=["입문자"]),
        }
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        disposition = consumer.handle(as_envelope({"isbns": ["A", "B"], "requestId": "r"}))

        assert disposition.succeeded
        assert len(fake_store.upserts) == 1
        doc_id, update = fake_store.upserts[0]
        assert doc_id == "A"
        assert update == {
            "aiResult": {"pros": ["쉬운 설명"], "cons": ["분량"], "recommendedFor": ["입문자"]}
        }

    def test_review_without_pros_is_not_written(self, fake_store, analyzer, dispatcher):
        fake_store.sources["A"] = {"title": "책 A"}
        analyzer.analyze_bulk.return_value = {"A": BookAiReview(cons=["분량"])}
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        consumer.handle(as_envelope({"isbns": ["A"]}))

        assert fake_store.upserts == []

    def test_match_mode_writes_ai_match(self, fake_store, analyzer, dispatcher):
        fake_store.sources["A"] = {"title": "책 A"}
        analyzer.analyze_bulk.return_value = {"A": AiResult(reason="입문에 적합", match_rate=88)}
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        consumer.handle(as_envelope({"isbns": ["A"], "mode": "MATCH", "query": "스프링 입문"}))

        assert fake_store.upserts == [
            ("A", {"aiMatch": {"query": "스프링 입문", "reason": "입문에 적합", "matchRate": 88}})
        ]
        kwargs = analyzer.analyze_bulk.call_args.kwargs
        assert kwargs["mode"] == AnalysisMode.MATCH
        assert kwargs["query"] == "스프링 입문"

    def test_match_mode_requires_query(self, fake_store, analyzer, dispatcher):
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        disposition = consumer.handle(as_envelope({"isbns": ["A"], "mode": "MATCH"}))

        assert disposition.error.code == ErrorCode.INVALID_MESSAGE
        analyzer.analyze_bulk.assert_not_called()

    def test_fetch_failure_and_missing_documents_are_skipped(self, fake_store, analyzer, dispatcher):
        fake_store.sources["C"] = {"title": "책 C", "author": "저자", "description": "설명"}
        fake_store.fail_get.add("A")
        analyzer.analyze_bulk.return_value = {}
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        disposition = consumer.handle(as_envelope({"isbns": ["A", "B", "C"]}))

        assert disposition.succeeded
        summaries = analyzer.analyze_bulk.call_args.args[0]
        assert [s.isbn for s in summaries] == ["C"]
        assert summaries[0].author == "저자"

    def test_nothing_fetched_skips_analysis(self, fake_store, analyzer, dispatcher):
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        disposition = consumer.handle(as_envelope({"isbns": ["A"]}))

        assert disposition.succeeded
        analyzer.analyze_bulk.assert_not_called()

    def test_empty_isbn_list_is_invalid(self, fake_store, analyzer, dispatcher):
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        for isbns in ([], None, ["  "]):
            disposition = consumer.handle(as_envelope({"isbns": isbns}))
            assert disposition.error.code == ErrorCode.INVALID_MESSAGE

    def test_rate_limit_takes_delayed_retry(self, fake_store, analyzer, dispatcher):
        fake_store.sources["A"] = {"title": "책 A"}
        analyzer.analyze_bulk.side_effect = RateLimitError("gemini", "quota exceeded")
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        disposition = consumer.handle(as_envelope({"isbns": ["A"]}, retry_count=3))

        assert disposition.outcome == RetryOutcome.RATE_LIMIT_DELAY
        assert disposition.route == Route.RETRY
        assert disposition.envelope.headers[HDR_RETRY_COUNT] == 1
        assert disposition.envelope.expiration_ms == 86_400_000
        assert fake_store.upserts == []

    def test_provider_error_is_retried(self, fake_store, analyzer, dispatcher):
        fake_store.sources["A"] = {"title": "책 A"}
        analyzer.analyze_bulk.side_effect = ProviderError("gemini", "HTTP 503", status_code=503)
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        disposition = consumer.handle(as_envelope({"isbns": ["A"]}))

        assert disposition.outcome == RetryOutcome.RETRY
        assert disposition.error.code == ErrorCode.AI_PROVIDER_ERROR

    def test_per_isbn_write_failure_does_not_fail_batch(self, fake_store, analyzer, dispatcher):
        fake_store.sources.update({"A": {"title": "a"}, "B": {"title": "b"}})
        fake_store.fail_upsert.add("A")
        analyzer.analyze_bulk.return_value = {
            "A": BookAiReview(pros=["p"]),
            "B": BookAiReview(pros=["q"]),
        }
        consumer = MessageConsumer(AiAnalysisProcessor(fake_store, analyzer), dispatcher)

        disposition = consumer.handle(as_envelope({"isbns": ["A", "B"]}))

        assert disposition.succeeded
        assert [doc_id for doc_id, _ in fake_store.upserts] == ["B"]
