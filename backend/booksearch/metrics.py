"""Prometheus counters for worker outcomes and query-stage fallbacks.

Counters are only registered when ENABLE_PROMETHEUS_METRICS=true; otherwise
the record_* functions are no-ops so callers never need to check the flag.
"""

import logging
from typing import Optional

from prometheus_client import Counter, REGISTRY

from booksearch.config import settings

logger = logging.getLogger(__name__)


class WorkerSearchMetrics:
    """Lazily-registered Prometheus counters."""

    def __init__(self, enabled: Optional[bool] = None, registry=REGISTRY):
        self.enabled = settings.enable_prometheus_metrics if enabled is None else enabled
        self._registry = registry
        self.consumer_outcomes: Optional[Counter] = None
        self.stage_fallbacks: Optional[Counter] = None
        if self.enabled:
            self._init_prometheus_metrics()

    def _init_prometheus_metrics(self) -> None:
        try:
            self.consumer_outcomes = Counter(
                "booksearch_consumer_outcomes_total",
                "Terminal outcome of each consumed message",
                ["consumer", "outcome"],
                registry=self._registry,
            )
            self.stage_fallbacks = Counter(
                "booksearch_search_stage_fallbacks_total",
                "Optional query stages that fell back to their default",
                ["stage"],
                registry=self._registry,
            )
            logger.info("Prometheus metrics registered")
        except ValueError as e:
            # Already registered (module reloaded in the same process)
            logger.warning(f"Prometheus metrics not registered: {e}")
            self.enabled = False

    def record_consumer_outcome(self, consumer: str, outcome: str) -> None:
        if self.enabled and self.consumer_outcomes is not None:
            self.consumer_outcomes.labels(consumer=consumer, outcome=outcome).inc()

    def record_stage_fallback(self, stage: str) -> None:
        if self.enabled and self.stage_fallbacks is not None:
            self.stage_fallbacks.labels(stage=stage).inc()


metrics = WorkerSearchMetrics()


def record_consumer_outcome(consumer: str, outcome: str) -> None:
    metrics.record_consumer_outcome(consumer, outcome)


def record_stage_fallback(stage: str) -> None:
    metrics.record_stage_fallback(stage)
