"""Retrying circuit breakers for query-time provider calls.

The embedding server, the reranker, the LLM and Elasticsearch each get one
breaker. A call made through a breaker is attempted up to
HTTP_RETRY_ATTEMPTS times with short exponential backoff (tenacity), but only
while the failure looks transient: network errors and timeouts, 5xx and 429.
A 4xx or a parse error fails on the first attempt.

A call that still fails after its retries counts once towards the breaker.
After `failure_threshold` consecutive failed calls the breaker opens and
rejects calls with CircuitBreakerOpen until `reset_timeout_seconds` have
passed; it then lets calls through half-open, closing again after
`success_threshold` successes or re-opening on the first failure.

Usage:
    from booksearch.resilience import embedding_circuit_breaker

    data = embedding_circuit_breaker.call(post_embedding, text)
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, TypeVar

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from booksearch.config import settings
from booksearch.errors import ProviderError, RateLimitError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """True for failures that can clear on their own (network, 5xx, 429)."""
    if isinstance(exc, (RateLimitError, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _transient_status(exc.response.status_code)
    if isinstance(exc, (ProviderError, StoreError)):
        if exc.status_code is not None:
            return _transient_status(exc.status_code)
        # Adapters wrap transport failures without a status
        return isinstance(exc.__cause__, httpx.TransportError)
    return False


def _transient_status(status: int) -> bool:
    return status >= 500 or status == 429


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds and retry settings of one breaker.

    Attributes:
        name: Provider name used in log lines
        failure_threshold: Consecutive failed calls that open the breaker
        success_threshold: Half-open successes needed to close it again
        reset_timeout_seconds: Time an open breaker waits before going half-open
        retry_attempts: Attempts per call, the first one included
        retry_min_wait: Lower bound of the backoff between attempts (seconds)
        retry_max_wait: Upper bound of the backoff between attempts (seconds)
        retry_predicate: Which exceptions earn another attempt
    """
    name: str
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_min_wait: float = 0.3
    retry_max_wait: float = 2.0
    retry_predicate: Callable[[BaseException], bool] = field(default=is_retryable)


@dataclass
class CircuitBreakerStats:
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    consecutive_failures: int = 0
    half_open_successes: int = 0


class CircuitBreakerOpen(Exception):
    """Raised instead of calling a provider whose breaker is open."""

    def __init__(self, breaker_name: str, time_until_retry: float):
        self.breaker_name = breaker_name
        self.time_until_retry = time_until_retry
        super().__init__(f"{breaker_name} circuit open, next attempt in {time_until_retry:.1f}s")


class CircuitBreaker:
    """Thread-safe breaker; the state lives behind one lock."""

    def __init__(self, config: CircuitBreakerConfig):
        self.config = config
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._stats = CircuitBreakerStats()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN and self._seconds_until_half_open() <= 0:
                self._move_to(CircuitState.HALF_OPEN)
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        with self._lock:
            return replace(self._stats)

    def _seconds_until_half_open(self) -> float:
        return self.config.reset_timeout_seconds - (time.monotonic() - self._opened_at)

    def _move_to(self, state: CircuitState) -> None:
        logger.warning(f"[{self.config.name}] circuit {self._state.value} -> {state.value}")
        self._state = state
        self._stats.half_open_successes = 0
        if state == CircuitState.OPEN:
            self._opened_at = time.monotonic()

    def _admit(self) -> None:
        with self._lock:
            if self.state == CircuitState.OPEN:
                self._stats.rejected_calls += 1
                raise CircuitBreakerOpen(self.config.name, max(0.0, self._seconds_until_half_open()))

    def _succeeded(self) -> None:
        with self._lock:
            self._stats.successful_calls += 1
            self._stats.consecutive_failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._stats.half_open_successes += 1
                if self._stats.half_open_successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)

    def _failed(self, error: BaseException) -> None:
        with self._lock:
            self._stats.failed_calls += 1
            self._stats.consecutive_failures += 1
            logger.warning(
                f"[{self.config.name}] call failed "
                f"({self._stats.consecutive_failures}/{self.config.failure_threshold}): {error!r}"
            )
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._stats.consecutive_failures >= self.config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(min=self.config.retry_min_wait, max=self.config.retry_max_wait),
            retry=retry_if_exception(self.config.retry_predicate),
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, retry_state) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"[{self.config.name}] attempt {retry_state.attempt_number}/"
            f"{self.config.retry_attempts} failed, retrying: {error!r}"
        )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run func with retry; count the final outcome against the breaker.

        Raises:
            CircuitBreakerOpen: The breaker is open; func was not called
            Exception: Whatever func raised on its last attempt
        """
        self._admit()
        try:
            result = self._retrying()(func, *args, **kwargs)
        except Exception as e:
            self._failed(e)
            raise
        self._succeeded()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._stats = CircuitBreakerStats()
            self._opened_at = 0.0


# =============================================================================
# One breaker per outbound provider
# =============================================================================

def _provider_breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerConfig(
            name=name,
            retry_attempts=settings.http_retry_attempts,
            retry_min_wait=settings.http_retry_min_wait,
            retry_max_wait=settings.http_retry_max_wait,
        )
    )


embedding_circuit_breaker = _provider_breaker("embedding")
reranker_circuit_breaker = _provider_breaker("reranker")
llm_circuit_breaker = _provider_breaker("llm")
elasticsearch_circuit_breaker = _provider_breaker("elasticsearch")

_ALL_BREAKERS: Dict[str, CircuitBreaker] = {
    breaker.config.name: breaker
    for breaker in (
        embedding_circuit_breaker,
        reranker_circuit_breaker,
        llm_circuit_breaker,
        elasticsearch_circuit_breaker,
    )
}


def reset_all_circuit_breakers() -> None:
    """Close every provider breaker and clear its counters (tests, manual recovery)."""
    for breaker in _ALL_BREAKERS.values():
        breaker.reset()
    logger.info("All circuit breakers reset")
