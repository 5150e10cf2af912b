"""Retry and dead-letter policy shared by every consumer.

Failed messages are never requeued by the broker. The consumer republishes a
copy of the message and then acknowledges the original ("republish-then-ack"):

- RETRY: copy goes to the retry route with x-retry-count incremented. The
  retry queue holds it for its TTL and dead-letters it back to the main queue.
- RATE_LIMIT_DELAY: copy goes to the retry route with x-retry-count pinned to
  1 and a long per-message expiration, so a provider quota that resets on its
  own schedule is retried indefinitely without ever reaching the dead-letter
  threshold.
- DEAD: copy goes to the dead-letter route carrying x-error-code and a capped
  x-error-message for manual inspection.

Decision logic is pure (classify / next_envelope) so it is testable without a
broker; worker.rabbitmq executes the resulting Disposition.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from booksearch.config import settings
from booksearch.errors import ErrorCode, WorkerProcessingError
from booksearch.text_utils import truncate

HDR_RETRY_COUNT = "x-retry-count"
HDR_ERROR_CODE = "x-error-code"
HDR_ERROR_MESSAGE = "x-error-message"


class Route(str, Enum):
    RETRY = "retry"
    DEAD = "dead"


class RetryOutcome(str, Enum):
    RETRY = "retry"
    DEAD = "dead"
    RATE_LIMIT_DELAY = "rate_limit_delay"


def parse_retry_count(value: Any) -> int:
    """Header value -> int; anything missing or unparseable counts as 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


@dataclass(frozen=True)
class Envelope:
    """A received (or to-be-published) message.

    Never mutated: retry/dead-letter copies are built with with_headers().
    """
    body: bytes
    headers: Mapping[str, Any] = field(default_factory=dict)
    delivery_tag: Optional[int] = None
    expiration_ms: Optional[int] = None
    content_type: Optional[str] = None
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def retry_count(self) -> int:
        return parse_retry_count(self.headers.get(HDR_RETRY_COUNT))

    def with_headers(self, updates: Mapping[str, Any], expiration_ms: Optional[int] = None) -> "Envelope":
        headers: Dict[str, Any] = dict(self.headers)
        headers.update(updates)
        return Envelope(
            body=self.body,
            headers=headers,
            delivery_tag=None,
            expiration_ms=expiration_ms,
            content_type=self.content_type,
            message_id=self.message_id,
            correlation_id=self.correlation_id,
        )


@dataclass
class RetryPolicy:
    """Attempt limit and header caps.

    Attributes:
        max_attempts: Retry count at which a failing message is dead-lettered
        rate_limit_codes: Error codes that take the long-delay path
        rate_limit_delay_ms: Per-message expiration for the long-delay path
        error_message_max_chars: Cap on x-error-message
    """
    max_attempts: int = settings.worker_max_retry_count
    rate_limit_codes: FrozenSet[ErrorCode] = frozenset({ErrorCode.RATE_LIMIT})
    rate_limit_delay_ms: int = settings.worker_rate_limit_delay_ms
    error_message_max_chars: int = settings.worker_error_message_max_chars


@dataclass(frozen=True)
class Disposition:
    """What the driver must do with a delivery. The original is always acked."""
    outcome: Optional[RetryOutcome] = None
    route: Optional[Route] = None
    envelope: Optional[Envelope] = None
    error: Optional[WorkerProcessingError] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is None

    @property
    def republish(self) -> bool:
        return self.envelope is not None


class RetryDispatcher:
    """Maps a processing failure to a retry outcome and the envelope to publish."""

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    def classify(self, error: BaseException, retry_count: int) -> RetryOutcome:
        code = WorkerProcessingError.wrap(error).code
        if code in self.policy.rate_limit_codes:
            return RetryOutcome.RATE_LIMIT_DELAY
        if retry_count < self.policy.max_attempts:
            return RetryOutcome.RETRY
        return RetryOutcome.DEAD

    def next_envelope(
        self,
        original: Envelope,
        outcome: RetryOutcome,
        retry_count: int,
        error: Optional[BaseException] = None,
    ) -> Tuple[Route, Envelope]:
        """Build the copy to republish for outcome.

        Returns:
            (route, new envelope); the original is left untouched
        """
        if outcome == RetryOutcome.RATE_LIMIT_DELAY:
            return Route.RETRY, original.with_headers(
                {HDR_RETRY_COUNT: 1},
                expiration_ms=self.policy.rate_limit_delay_ms,
            )

        if outcome == RetryOutcome.RETRY:
            return Route.RETRY, original.with_headers({HDR_RETRY_COUNT: retry_count + 1})

        wrapped = WorkerProcessingError.wrap(error) if error is not None else None
        code = wrapped.code if wrapped is not None else ErrorCode.UNKNOWN
        message = str(wrapped) if wrapped is not None else ""
        return Route.DEAD, original.with_headers({
            HDR_RETRY_COUNT: retry_count,
            HDR_ERROR_CODE: code.value,
            HDR_ERROR_MESSAGE: truncate(message, self.policy.error_message_max_chars),
        })

    def success(self) -> Disposition:
        return Disposition()

    def failure(self, original: Envelope, error: BaseException) -> Disposition:
        """Decide the disposition of a failed delivery."""
        wrapped = WorkerProcessingError.wrap(error)
        retry_count = original.retry_count
        outcome = self.classify(wrapped, retry_count)
        route, envelope = self.next_envelope(original, outcome, retry_count, wrapped)
        return Disposition(outcome=outcome, route=route, envelope=envelope, error=wrapped)
