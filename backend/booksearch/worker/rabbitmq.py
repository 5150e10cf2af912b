"""RabbitMQ driver for the indexing consumers (aio-pika).

The broker topology (main/retry/dead-letter exchanges, the retry queues whose
TTL dead-letters messages back to the main exchange) is provisioned outside
this process; queues and exchanges are looked up passively here.

Each delivery is converted to an Envelope and handed to a synchronous
MessageConsumer on the default executor, so a slow embedding or Elasticsearch
call never blocks the event loop. The consumer's Disposition is then executed:
republish the copy (if any) to the retry or dead-letter exchange, then ack the
original. If the republish itself fails the original is nacked with requeue so
the broker redelivers it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractRobustConnection

from booksearch.config import settings
from booksearch.worker.consumers import MessageConsumer
from booksearch.worker.retry import Disposition, Envelope, Route

logger = logging.getLogger(__name__)


class MessagingConnectionError(Exception):
    """Broker connection could not be established or is not open."""


@dataclass(frozen=True)
class QueueBinding:
    """Where a consumer reads from and where its failed copies go."""
    queue: str
    retry_routing_key: str
    fail_routing_key: str


def to_envelope(raw: AbstractIncomingMessage) -> Envelope:
    return Envelope(
        body=raw.body,
        headers=dict(raw.headers or {}),
        delivery_tag=raw.delivery_tag,
        content_type=raw.content_type,
        message_id=raw.message_id,
        correlation_id=raw.correlation_id,
    )


def to_amqp_message(envelope: Envelope) -> aio_pika.Message:
    expiration = (
        timedelta(milliseconds=envelope.expiration_ms)
        if envelope.expiration_ms is not None
        else None
    )
    return aio_pika.Message(
        body=envelope.body,
        headers=dict(envelope.headers),
        content_type=envelope.content_type or "application/json",
        message_id=envelope.message_id,
        correlation_id=envelope.correlation_id,
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        expiration=expiration,
    )


class RabbitMQConnectionManager:
    """Single robust connection and channel.

    connect_robust reconnects automatically; call connect() before use and
    close() on shutdown.
    """

    def __init__(self, url: Optional[str] = None, prefetch_count: Optional[int] = None):
        self._url = url or settings.rabbitmq_url
        self._prefetch_count = prefetch_count or settings.rabbitmq_prefetch_count
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None

    async def connect(self) -> None:
        """Establish connection and channel. Idempotent if already connected."""
        if self._connection is not None and not self._connection.is_closed:
            return
        try:
            self._connection = await aio_pika.connect_robust(self._url)
            self._channel = await self._connection.channel(publisher_confirms=True)
            await self._channel.set_qos(prefetch_count=self._prefetch_count)
        except (ConnectionError, OSError, ValueError) as e:
            raise MessagingConnectionError(str(e)) from e
        logger.info(f"Connected to RabbitMQ (prefetch={self._prefetch_count})")

    async def close(self) -> None:
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    @property
    def channel(self) -> AbstractChannel:
        if self._channel is None:
            raise MessagingConnectionError("Not connected; call connect() first")
        return self._channel

    async def health_check(self) -> bool:
        if self._connection is None or self._channel is None:
            return False
        return not self._connection.is_closed


class WorkerRunner:
    """Consumes the configured queues and executes each delivery's disposition."""

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        retry_exchange: Optional[str] = None,
        dlx_exchange: Optional[str] = None,
    ):
        self._connection = connection
        self._retry_exchange_name = retry_exchange or settings.rabbitmq_retry_exchange
        self._dlx_exchange_name = dlx_exchange or settings.rabbitmq_dlx_exchange
        self._consumer_tags: List[Tuple[object, str]] = []

    async def publish(self, route: Route, envelope: Envelope, binding: QueueBinding) -> None:
        """Publish envelope to the retry or dead-letter exchange."""
        if route == Route.RETRY:
            exchange_name, routing_key = self._retry_exchange_name, binding.retry_routing_key
        else:
            exchange_name, routing_key = self._dlx_exchange_name, binding.fail_routing_key
        exchange = await self._connection.channel.get_exchange(exchange_name, ensure=True)
        await exchange.publish(to_amqp_message(envelope), routing_key=routing_key)

    async def settle(
        self,
        raw: AbstractIncomingMessage,
        disposition: Disposition,
        binding: QueueBinding,
    ) -> None:
        """Republish (if needed) and then ack the original delivery."""
        if disposition.republish:
            try:
                await self.publish(disposition.route, disposition.envelope, binding)
            except Exception as e:
                logger.error(
                    f"Republish to {disposition.route.value} failed for queue={binding.queue}; "
                    f"requeueing original: {e}",
                    exc_info=True,
                )
                await raw.nack(requeue=True)
                return
        await raw.ack()

    async def on_message(
        self,
        consumer: MessageConsumer,
        binding: QueueBinding,
        raw: AbstractIncomingMessage,
    ) -> None:
        envelope = to_envelope(raw)
        loop = asyncio.get_running_loop()
        disposition = await loop.run_in_executor(None, consumer.handle, envelope)
        await self.settle(raw, disposition, binding)

    async def start(self, consumers: List[Tuple[MessageConsumer, QueueBinding]]) -> None:
        """Start consuming every (consumer, binding) pair."""
        await self._connection.connect()
        channel = self._connection.channel
        for consumer, binding in consumers:
            queue = await channel.get_queue(binding.queue, ensure=True)

            async def handler(raw: AbstractIncomingMessage, consumer=consumer, binding=binding) -> None:
                await self.on_message(consumer, binding, raw)

            tag = await queue.consume(handler, no_ack=False)
            self._consumer_tags.append((queue, tag))
            logger.info(f"Consuming queue={binding.queue} with {consumer.name}")

    async def stop(self) -> None:
        for queue, tag in self._consumer_tags:
            await queue.cancel(tag)
        self._consumer_tags.clear()


def default_bindings() -> dict:
    """Queue bindings per consumer name, from settings."""
    return {
        "book_upsert": QueueBinding(
            queue=settings.rabbitmq_queue_book_upsert,
            retry_routing_key=settings.rabbitmq_rk_book_upsert_retry,
            fail_routing_key=settings.rabbitmq_rk_book_upsert_fail,
        ),
        "book_delete": QueueBinding(
            queue=settings.rabbitmq_queue_book_delete,
            retry_routing_key=settings.rabbitmq_rk_book_delete_retry,
            fail_routing_key=settings.rabbitmq_rk_book_delete_fail,
        ),
        "ai_analysis": QueueBinding(
            queue=settings.rabbitmq_queue_ai_analysis,
            retry_routing_key=settings.rabbitmq_rk_ai_analysis_retry,
            fail_routing_key=settings.rabbitmq_rk_ai_analysis_fail,
        ),
    }
