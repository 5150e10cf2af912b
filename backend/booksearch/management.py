"""Synchronous catalogue management for admin tooling.

This module is public API for admin callers (the catalogue back office and
one-off maintenance scripts); the indexing worker and the search pipeline do
not use it.

Unlike the indexing worker, these operations never raise: they report an
OperationResult so a caller can answer its own client without a try/except.
Embedding is best-effort here: if the embedding server is down the book is
still stored, just without a vector, and becomes keyword-searchable only.

Usage:
    from booksearch.management import BookManagementService

    result = BookManagementService().upsert_book(payload)
    if not result.success:
        ...
"""

import logging
from dataclasses import dataclass
from typing import Optional

from booksearch.ai.embedding import EmbeddingGateway
from booksearch.errors import describe_error
from booksearch.models import BookPayload
from booksearch.store.elasticsearch import ElasticsearchBookStore, build_upsert_doc
from booksearch.text_utils import build_embedding_text, is_blank

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    success: bool
    message: str

    @classmethod
    def ok(cls, message: str) -> "OperationResult":
        return cls(True, message)

    @classmethod
    def failure(cls, message: str) -> "OperationResult":
        return cls(False, message)


class BookManagementService:
    """Stores and removes single books on behalf of an administrator."""

    def __init__(self, store=None, embedding: Optional[EmbeddingGateway] = None):
        self.store = store or ElasticsearchBookStore(breaker=None)
        self.embedding = embedding or EmbeddingGateway()

    def upsert_book(self, book: BookPayload) -> OperationResult:
        if is_blank(book.isbn):
            return OperationResult.failure("ISBN is required")
        isbn = book.isbn.strip()

        vector = None
        text = build_embedding_text(book.title, book.author, book.publisher, book.description)
        if text:
            try:
                vector = self.embedding.embed(text)
                logger.info(f"Embedding created: isbn={isbn}, dims={len(vector)}")
            except Exception as e:
                logger.warning(f"Embedding failed, storing without vector: isbn={isbn}, {describe_error(e)}")
        else:
            logger.warning(f"No text to embed, storing without vector: isbn={isbn}")

        try:
            self.store.upsert(isbn, build_upsert_doc(book, vector, self.store.vector_field))
        except Exception as e:
            logger.error(f"Book save failed: isbn={isbn}, {describe_error(e)}")
            return OperationResult.failure("Failed to save the book (store write error)")

        logger.info(f"Book saved: isbn={isbn}, title={book.title}")
        return OperationResult.ok("Book saved")

    def delete_book(self, isbn: str) -> OperationResult:
        if is_blank(isbn):
            return OperationResult.failure("ISBN is required")
        isbn = isbn.strip()
        try:
            deleted = self.store.delete(isbn)
        except Exception as e:
            logger.error(f"Book delete failed: isbn={isbn}, {describe_error(e)}")
            return OperationResult.failure("Failed to delete the book (store delete error)")

        if not deleted:
            return OperationResult.ok("Book was already absent")
        logger.info(f"Book deleted: isbn={isbn}")
        return OperationResult.ok("Book deleted")
