"""Per-stage outcome type for the query pipeline.

Every stage returns a StageResult instead of raising, so the fallback policy of
each stage is visible where the orchestrator calls it:

    OK        the stage produced its value
    DEGRADED  an optional stage failed; value holds its documented fallback
    FATAL     a mandatory stage failed; unwrap() re-raises the error
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from booksearch.errors import describe_error
from booksearch.metrics import record_stage_fallback

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StageStatus(Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FATAL = "fatal"


@dataclass
class StageResult(Generic[T]):
    status: StageStatus
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, value: T) -> "StageResult[T]":
        return cls(StageStatus.OK, value)

    @classmethod
    def degraded(cls, fallback: T, error: BaseException) -> "StageResult[T]":
        return cls(StageStatus.DEGRADED, fallback, error)

    @classmethod
    def fatal(cls, error: BaseException) -> "StageResult[T]":
        return cls(StageStatus.FATAL, None, error)

    @property
    def is_ok(self) -> bool:
        return self.status == StageStatus.OK

    def unwrap(self) -> T:
        """Return the value (real or fallback); re-raise a FATAL error."""
        if self.status == StageStatus.FATAL:
            raise self.error
        return self.value


def optional_stage(name: str, func: Callable[[], T], fallback: Callable[[], T]) -> StageResult[T]:
    """Run an optional stage; any failure yields DEGRADED with fallback()."""
    try:
        return StageResult.ok(func())
    except Exception as e:
        logger.warning(f"[Fallback] {name} failed: {describe_error(e)}")
        record_stage_fallback(name)
        return StageResult.degraded(fallback(), e)


def mandatory_stage(name: str, func: Callable[[], T]) -> StageResult[T]:
    """Run a mandatory stage; any failure yields FATAL."""
    try:
        return StageResult.ok(func())
    except Exception as e:
        logger.error(f"{name} failed: {describe_error(e)}")
        return StageResult.fatal(e)
