"""Embedding gateway for the external embedding server.

The server is an Ollama-compatible `/api/embeddings` endpoint by default, but
two response shapes are accepted so an OpenAI-style server can be swapped in:

    {"embedding": [0.1, 0.2, ...]}
    {"data": [{"embedding": [0.1, 0.2, ...]}, ...]}

Any other shape, an empty vector, or a vector whose length differs from the
configured dimension raises EmbeddingError. A wrong-length vector is never
padded or truncated: writing it would corrupt the dense_vector index.

Usage:
    from booksearch.ai.embedding import EmbeddingGateway

    gateway = EmbeddingGateway()
    vector = gateway.embed("[TITLE]\\n토비의 스프링")
"""

import logging
from typing import Any, List, Optional

import httpx

from booksearch.config import settings
from booksearch.errors import EmbeddingError
from booksearch.resilience import CircuitBreaker

logger = logging.getLogger(__name__)


def parse_embedding_response(data: Any) -> List[float]:
    """Extract the vector from either supported response shape.

    Raises:
        EmbeddingError: If the payload matches neither shape
    """
    if isinstance(data, dict):
        if "embedding" in data:
            vector = data["embedding"]
        elif isinstance(data.get("data"), list):
            items = data["data"]
            if not items or not isinstance(items[0], dict):
                raise EmbeddingError("Embedding response has an empty 'data' list")
            vector = items[0].get("embedding")
        else:
            raise EmbeddingError(
                f"Unrecognised embedding response keys: {sorted(data.keys())}"
            )
    else:
        raise EmbeddingError(f"Unrecognised embedding response type: {type(data).__name__}")

    if vector is None:
        return []
    if not isinstance(vector, list):
        raise EmbeddingError(f"Embedding field is not a list: {type(vector).__name__}")
    try:
        return [float(v) for v in vector]
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Embedding contains non-numeric values: {e}") from e


class EmbeddingGateway:
    """Calls the embedding server and validates the returned vector."""

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        """Initialize the gateway.

        Args:
            url: Embedding endpoint. Defaults to settings.embedding_url
            model: Model name sent in the request body
            dimension: Expected vector length
            timeout_seconds: Per-request timeout
            client: Optional httpx.Client (tests pass one with a MockTransport)
            breaker: Optional circuit breaker. The query pipeline passes
                embedding_circuit_breaker; the worker does not, since message
                retries already bound its attempts.
        """
        self.url = url or settings.embedding_url
        self.model = model or settings.embedding_model
        self.dimension = dimension or settings.embedding_dimension
        self._client = client or httpx.Client(
            timeout=timeout_seconds or settings.embedding_timeout_seconds
        )
        self._breaker = breaker

    def _request(self, text: str) -> Any:
        response = self._client.post(self.url, json={"model": self.model, "prompt": text})
        response.raise_for_status()
        return response.json()

    def embed(self, text: str) -> List[float]:
        """Embed text.

        Returns:
            Vector of exactly `dimension` floats

        Raises:
            EmbeddingError: Provider failure, malformed response, empty vector
                or dimension mismatch
        """
        try:
            if self._breaker is not None:
                data = self._breaker.call(self._request, text)
            else:
                data = self._request(text)
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e
        except ValueError as e:
            # Body was not JSON
            raise EmbeddingError(f"Embedding response is not JSON: {e}") from e

        vector = parse_embedding_response(data)
        if not vector:
            raise EmbeddingError("Embedding provider returned an empty vector")
        if len(vector) != self.dimension:
            raise EmbeddingError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
            )

        logger.debug(f"Embedded {len(text)} chars -> {len(vector)} dims")
        return vector

    def close(self) -> None:
        self._client.close()
