"""Clients for the external AI providers.

- EmbeddingGateway: text -> fixed-dimension vector (Ollama-compatible server)
- RerankingClient: (query, texts) -> per-text relevance scores
- GeminiClient / LlmAnalysisClient / BulkBookAnalyzer: LLM book analysis

Usage:
    from booksearch.ai import EmbeddingGateway

    vector = EmbeddingGateway().embed("[TITLE]\\n이펙티브 자바")
"""

from booksearch.ai.embedding import EmbeddingGateway
from booksearch.ai.llm import BulkBookAnalyzer, GeminiClient, LlmAnalysisClient
from booksearch.ai.reranker import RerankingClient

__all__ = [
    "EmbeddingGateway",
    "RerankingClient",
    "GeminiClient",
    "LlmAnalysisClient",
    "BulkBookAnalyzer",
]
