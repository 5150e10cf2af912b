"""Exception types and failure taxonomy.

Message-level failures are described by an ErrorCode rather than by the
exception class that happened to be raised. Consumers wrap anything they catch
into a WorkerProcessingError so the retry dispatcher only ever reasons about
codes.

Query-time stage failures use SearchModuleError subclasses; the orchestrator
converts them into the stage's fallback value.
"""

import re
import traceback
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Failure classes carried in the error-code header of dead-lettered messages."""
    INVALID_MESSAGE = "INVALID_MESSAGE"
    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    STORE_ERROR = "STORE_ERROR"
    AI_PROVIDER_ERROR = "AI_PROVIDER_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    UNKNOWN = "UNKNOWN"


class WorkerProcessingError(Exception):
    """A message could not be processed; `code` decides the retry path."""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        super().__init__(message)

    @classmethod
    def wrap(cls, exc: BaseException) -> "WorkerProcessingError":
        """Return exc itself if already wrapped, otherwise wrap it with its best-known code."""
        if isinstance(exc, WorkerProcessingError):
            return exc
        code = getattr(exc, "code", None)
        if not isinstance(code, ErrorCode):
            code = ErrorCode.UNKNOWN
        wrapped = cls(code, str(exc) or exc.__class__.__name__)
        wrapped.__cause__ = exc
        return wrapped


class StoreError(Exception):
    """Document store request failed."""
    code = ErrorCode.STORE_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class EmbeddingError(Exception):
    """Embedding provider returned nothing usable (empty, malformed or wrong dimension)."""
    code = ErrorCode.EMBEDDING_FAILED


class ProviderError(Exception):
    """An AI provider (reranker, LLM) answered with an error status."""
    code = ErrorCode.AI_PROVIDER_ERROR

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"[{provider}] {message}")


class RateLimitError(ProviderError):
    """Provider quota exhausted (HTTP 429)."""
    code = ErrorCode.RATE_LIMIT

    def __init__(self, provider: str, message: str):
        super().__init__(provider, message, status_code=429)


class SearchModuleError(Exception):
    """A query pipeline component failed."""

    def __init__(self, component: str, message: str):
        self.component = component
        super().__init__(f"[{component}] {message}")


class RerankingError(SearchModuleError):
    def __init__(self, message: str):
        super().__init__("reranker", message)


class LlmAnalysisError(SearchModuleError):
    def __init__(self, message: str):
        super().__init__("llm", message)


# =============================================================================
# Log helpers
# =============================================================================

def root_cause(exc: BaseException) -> BaseException:
    """Follow the __cause__/__context__ chain to its innermost exception."""
    current = exc
    seen = {id(current)}
    while True:
        nxt = current.__cause__ or current.__context__
        if nxt is None or id(nxt) in seen:
            return current
        seen.add(id(nxt))
        current = nxt


def describe_error(exc: Optional[BaseException], max_chars: int = 300) -> str:
    """One-line `Type: message` summary of the root cause."""
    if exc is None:
        return ""
    root = root_cause(exc)
    message = re.sub(r"\s+", " ", str(root)).strip()[:max_chars]
    return f"{root.__class__.__name__}: {message}"


def error_origin(exc: Optional[BaseException], package: str = "booksearch") -> str:
    """Innermost `module:function:line` of the root cause inside `package`."""
    if exc is None:
        return "-"
    frames = traceback.extract_tb(root_cause(exc).__traceback__)
    if not frames:
        return "-"
    for frame in reversed(frames):
        if f"/{package}/" in frame.filename.replace("\\", "/"):
            return f"{frame.filename.rsplit('/', 1)[-1]}:{frame.name}:{frame.lineno}"
    last = frames[-1]
    return f"{last.filename.rsplit('/', 1)[-1]}:{last.name}:{last.lineno}"
