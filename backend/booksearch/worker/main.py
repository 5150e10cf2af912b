"""Entry point for the indexing worker process.

Usage:
    booksearch-worker            # console script
    python -m booksearch.worker.main
"""

import asyncio
import logging
import signal

from prometheus_client import start_http_server

from booksearch.ai.embedding import EmbeddingGateway
from booksearch.ai.llm import BulkBookAnalyzer
from booksearch.config import settings
from booksearch.store.elasticsearch import ElasticsearchBookStore
from booksearch.worker.consumers import (
    AiAnalysisProcessor,
    DeleteProcessor,
    MessageConsumer,
    UpsertProcessor,
)
from booksearch.worker.rabbitmq import RabbitMQConnectionManager, WorkerRunner, default_bindings
from booksearch.worker.retry import RetryDispatcher

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_consumers(store: ElasticsearchBookStore) -> list:
    """Wire the three consumers to their queue bindings."""
    dispatcher = RetryDispatcher()
    bindings = default_bindings()
    processors = [
        UpsertProcessor(store, EmbeddingGateway()),
        DeleteProcessor(store),
        AiAnalysisProcessor(store, BulkBookAnalyzer()),
    ]
    return [
        (MessageConsumer(processor, dispatcher), bindings[processor.name])
        for processor in processors
    ]


async def run() -> None:
    # Worker writes are retried through the message retry path, not in-process
    store = ElasticsearchBookStore(breaker=None)
    connection = RabbitMQConnectionManager()
    runner = WorkerRunner(connection)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await runner.start(build_consumers(store))
    logger.info("Indexing worker started")
    try:
        await stop_event.wait()
    finally:
        logger.info("Indexing worker stopping")
        await runner.stop()
        await connection.close()
        store.close()


def main() -> None:
    configure_logging()
    if settings.enable_prometheus_metrics:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics exposed on :{settings.metrics_port}")
    asyncio.run(run())


if __name__ == "__main__":
    main()
