"""Indexing consumers: book upsert, book delete and batch AI analysis.

Each consumer is a small processor with `validate` and `process` steps.
MessageConsumer wraps a processor with the shared contract:

    RECEIVED -> parse -> validate -> process -> ack
                              \\ any failure -> RetryDispatcher -> republish + ack

Processors raise; they never publish or ack themselves. Every per-message
operation is keyed by ISBN, so replaying a message after a crash is safe.

Usage:
    consumer = MessageConsumer(UpsertProcessor(store, gateway))
    disposition = consumer.handle(envelope)
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError

from booksearch.ai.embedding import EmbeddingGateway
from booksearch.ai.llm import BulkBookAnalyzer, summaries_from_sources
from booksearch.config import settings
from booksearch.errors import ErrorCode, WorkerProcessingError, describe_error, error_origin
from booksearch.metrics import record_consumer_outcome
from booksearch.models import (
    AiAnalysisRequestMessage,
    AiResult,
    AnalysisMode,
    BookAiReview,
    BookDeleteMessage,
    BookPayload,
    BookUpsertMessage,
)
from booksearch.store.elasticsearch import build_upsert_doc
from booksearch.text_utils import build_embedding_text, is_blank
from booksearch.worker.retry import Disposition, Envelope, RetryDispatcher, RetryOutcome

logger = logging.getLogger(__name__)


def _invalid(message: str) -> WorkerProcessingError:
    return WorkerProcessingError(ErrorCode.INVALID_MESSAGE, message)


# =============================================================================
# Processors
# =============================================================================

class UpsertProcessor:
    """Embeds a book and writes it to the index."""
    name = "book_upsert"
    tag = "[BOOK_UPSERT]"
    message_model = BookUpsertMessage

    def __init__(self, store, embedding: Optional[EmbeddingGateway] = None, vector_field: Optional[str] = None):
        self.store = store
        self.embedding = embedding or EmbeddingGateway()
        self.vector_field = vector_field or settings.es_vector_field

    @staticmethod
    def _text(book: BookPayload) -> str:
        return build_embedding_text(book.title, book.author, book.publisher, book.description)

    def describe(self, message: BookUpsertMessage) -> str:
        isbn = message.book.isbn if message.book else None
        return f"isbn={isbn}, requestId={message.request_id}"

    def validate(self, message: BookUpsertMessage) -> None:
        book = message.book
        if book is None or is_blank(book.isbn):
            raise _invalid("BookUpsertMessage.book.isbn is null/blank")
        if not self._text(book):
            raise _invalid("Embedding input text is blank (title/author/publisher/description all empty)")

    def process(self, message: BookUpsertMessage) -> None:
        book = message.book
        isbn = book.isbn.strip()
        vector = self.embedding.embed(self._text(book))
        logger.info(f"{self.tag} embedding ok isbn={isbn}, dims={len(vector)}")
        self.store.upsert(isbn, build_upsert_doc(book, vector, self.vector_field))


class DeleteProcessor:
    """Removes a book from the index; deleting an absent book is a success."""
    name = "book_delete"
    tag = "[BOOK_DELETE]"
    message_model = BookDeleteMessage

    def __init__(self, store):
        self.store = store

    def describe(self, message: BookDeleteMessage) -> str:
        return f"isbn={message.isbn}, requestId={message.request_id}"

    def validate(self, message: BookDeleteMessage) -> None:
        if is_blank(message.isbn):
            raise _invalid("BookDeleteMessage.isbn is null/blank")

    def process(self, message: BookDeleteMessage) -> None:
        isbn = message.isbn.strip()
        deleted = self.store.delete(isbn)
        if not deleted:
            logger.info(f"{self.tag} document already absent isbn={isbn}")


class AiAnalysisProcessor:
    """Runs one bulk LLM analysis for a batch of indexed books.

    Per-ISBN fetch and write failures are logged and skipped; only a failure
    of the analysis call itself fails the message.
    """
    name = "ai_analysis"
    tag = "[AI_BATCH]"
    message_model = AiAnalysisRequestMessage

    def __init__(self, store, analyzer: Optional[BulkBookAnalyzer] = None):
        self.store = store
        self.analyzer = analyzer or BulkBookAnalyzer()

    def describe(self, message: AiAnalysisRequestMessage) -> str:
        size = len(message.isbns or [])
        return f"size={size}, mode={message.mode.value}, requestId={message.request_id}"

    def validate(self, message: AiAnalysisRequestMessage) -> None:
        if not message.isbns or all(is_blank(isbn) for isbn in message.isbns):
            raise _invalid("ISBN list is empty or null")
        if message.mode == AnalysisMode.MATCH and is_blank(message.query):
            raise _invalid("MATCH analysis requires a query")

    def _fetch_sources(self, message: AiAnalysisRequestMessage) -> Dict[str, Dict[str, Any]]:
        sources: Dict[str, Dict[str, Any]] = {}
        for raw_isbn in message.isbns:
            if is_blank(raw_isbn):
                continue
            isbn = raw_isbn.strip()
            try:
                source = self.store.get_by_id(isbn)
            except Exception as e:
                logger.warning(f"{self.tag} fetch failed isbn={isbn}: {describe_error(e)}")
                continue
            if source is None:
                logger.warning(f"{self.tag} document not found isbn={isbn}")
                continue
            sources[isbn] = source
        return sources

    @staticmethod
    def _ai_update(message: AiAnalysisRequestMessage, result: Any) -> Optional[Dict[str, Any]]:
        if isinstance(result, BookAiReview) and result.pros:
            return {"aiResult": result.model_dump(by_alias=True)}
        if isinstance(result, AiResult) and not is_blank(result.reason):
            return {
                "aiMatch": {
                    "query": message.query,
                    "reason": result.reason,
                    "matchRate": result.match_rate,
                }
            }
        return None

    def process(self, message: AiAnalysisRequestMessage) -> None:
        sources = self._fetch_sources(message)
        if not sources:
            logger.warning(f"{self.tag} no documents to analyze requestId={message.request_id}")
            return

        results = self.analyzer.analyze_bulk(
            summaries_from_sources(sources), mode=message.mode, query=message.query
        )

        updated = 0
        for isbn in sources:
            update = self._ai_update(message, results.get(isbn))
            if update is None:
                continue
            try:
                self.store.upsert(isbn, update)
                updated += 1
            except Exception as e:
                logger.error(f"{self.tag} update failed isbn={isbn}: {describe_error(e)}", exc_info=True)

        logger.info(
            f"{self.tag} batch done requestId={message.request_id}, "
            f"fetched={len(sources)}, analyzed={len(results)}, updated={updated}"
        )


# =============================================================================
# Shared consume contract
# =============================================================================

class MessageConsumer:
    """Parse, validate and process one delivery, then decide its disposition.

    handle() never raises: every failure becomes a Disposition so the driver
    can republish and ack. Only a failure of the driver itself leaves the
    original unacknowledged for broker redelivery.
    """

    def __init__(self, processor, dispatcher: Optional[RetryDispatcher] = None):
        self.processor = processor
        self.dispatcher = dispatcher or RetryDispatcher()

    @property
    def name(self) -> str:
        return self.processor.name

    def parse(self, body: bytes) -> BaseModel:
        try:
            return self.processor.message_model.model_validate_json(body)
        except ValidationError as e:
            raise _invalid(f"Undecodable {self.processor.message_model.__name__}: {e}") from e

    def handle(self, envelope: Envelope) -> Disposition:
        tag = self.processor.tag
        retry_count = envelope.retry_count

        try:
            message = self.parse(envelope.body)
            logger.info(f"{tag} consume {self.processor.describe(message)}, retryCount={retry_count}")
            self.processor.validate(message)
            self.processor.process(message)
        except Exception as e:
            disposition = self.dispatcher.failure(envelope, e)
            self._log_failure(disposition, retry_count)
            record_consumer_outcome(self.name, disposition.outcome.value)
            return disposition

        logger.info(f"{tag} success {self.processor.describe(message)}")
        record_consumer_outcome(self.name, "ack")
        return self.dispatcher.success()

    def _log_failure(self, disposition: Disposition, retry_count: int) -> None:
        tag = self.processor.tag
        error = disposition.error
        detail = (
            f"code={error.code.value}, where={error_origin(error)}, cause={describe_error(error)}"
        )
        if disposition.outcome == RetryOutcome.RATE_LIMIT_DELAY:
            logger.warning(
                f"{tag} rate limited -> delayed retry in "
                f"{self.dispatcher.policy.rate_limit_delay_ms}ms, {detail}"
            )
        elif disposition.outcome == RetryOutcome.RETRY:
            logger.warning(f"{tag} failed -> retry nextRetry={retry_count + 1}, {detail}")
        else:
            logger.error(f"{tag} failed -> dead-letter retries={retry_count}, {detail}", exc_info=error)
