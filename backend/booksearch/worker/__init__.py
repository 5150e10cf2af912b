"""Indexing worker: RabbitMQ consumers that keep the search index in sync.

Usage:
    booksearch-worker
"""

from booksearch.worker.consumers import (
    AiAnalysisProcessor,
    DeleteProcessor,
    MessageConsumer,
    UpsertProcessor,
)
from booksearch.worker.retry import Envelope, RetryDispatcher, RetryOutcome, RetryPolicy

__all__ = [
    "MessageConsumer",
    "UpsertProcessor",
    "DeleteProcessor",
    "AiAnalysisProcessor",
    "Envelope",
    "RetryDispatcher",
    "RetryOutcome",
    "RetryPolicy",
]
