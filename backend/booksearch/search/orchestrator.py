"""Query-time search pipeline.

ai_search:
    cache lookup -> refine -> embed (optional) -> hybrid retrieval (mandatory)
    -> rerank top-K (optional) -> LLM analysis of top-M (optional)
    -> assemble -> cache write (only when the LLM produced results)

basic_search:
    ISBN-shaped query -> direct lookup; otherwise
    refine -> embed (optional) -> hybrid retrieval (mandatory) -> assemble

Optional stages fall back to a fixed value when they fail and the request
still succeeds. Only a retrieval failure reaches the caller.

Usage:
    orchestrator = SearchOrchestrator()
    response = orchestrator.ai_search("스프링 부트 입문서 추천해줘")
"""

import logging
import re
from typing import Dict, List, Optional

from booksearch.ai.embedding import EmbeddingGateway
from booksearch.ai.llm import LlmAnalysisClient
from booksearch.ai.reranker import RerankingClient
from booksearch.config import settings
from booksearch.models import AiResult, SearchCandidate, SearchResponse
from booksearch.resilience import embedding_circuit_breaker
from booksearch.search.assembler import (
    apply_rerank_scores,
    assemble_ai_result,
    assemble_basic_result,
    neutral_scores,
)
from booksearch.search.cache import QueryCache
from booksearch.search.preprocessor import QueryPreprocessor
from booksearch.search.stages import StageResult, mandatory_stage, optional_stage
from booksearch.store.elasticsearch import ElasticsearchBookStore

logger = logging.getLogger(__name__)

ISBN_QUERY = re.compile(r"^[0-9-]+$")


class SearchOrchestrator:
    """Runs the degrading search pipeline over the store and AI providers."""

    def __init__(
        self,
        store=None,
        embedding: Optional[EmbeddingGateway] = None,
        reranker: Optional[RerankingClient] = None,
        llm: Optional[LlmAnalysisClient] = None,
        cache: Optional[QueryCache] = None,
        preprocessor: Optional[QueryPreprocessor] = None,
    ):
        self.store = store or ElasticsearchBookStore()
        self.embedding = embedding or EmbeddingGateway(breaker=embedding_circuit_breaker)
        self.reranker = reranker or RerankingClient()
        self.llm = llm or LlmAnalysisClient()
        self.cache = cache or QueryCache()
        self.preprocessor = preprocessor or QueryPreprocessor()

        self.fetch_size = settings.search_fetch_size
        self.rerank_limit = settings.rerank_limit
        self.rerank_fallback_score = settings.rerank_fallback_score
        self.ai_eval_size = settings.ai_eval_size
        self.result_cap = settings.search_result_cap
        self.cache_ttl_seconds = settings.ai_search_cache_ttl_seconds

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _embed(self, refined_query: str) -> StageResult[List[float]]:
        # An empty vector makes retrieval drop its kNN clause
        return optional_stage("embedding", lambda: self.embedding.embed(refined_query), list)

    def _retrieve(self, refined_query: str, vector: List[float]) -> StageResult[List[SearchCandidate]]:
        return mandatory_stage(
            "retrieval",
            lambda: self.store.hybrid_search(refined_query, vector, self.fetch_size),
        )

    def _rerank(self, refined_query: str, candidates: List[SearchCandidate]) -> StageResult[List[SearchCandidate]]:
        def run() -> List[SearchCandidate]:
            top = candidates[: self.rerank_limit]
            scores = self.reranker.rerank_books(refined_query, [c.book for c in top])
            if not scores:
                raise ValueError("reranker returned no scores")
            return apply_rerank_scores(candidates, scores, self.rerank_limit)

        return optional_stage(
            "rerank",
            run,
            lambda: neutral_scores(candidates, self.rerank_fallback_score),
        )

    def _analyze(self, query: str, ranked: List[SearchCandidate]) -> StageResult[Dict[str, AiResult]]:
        top_books = [c.book for c in ranked[: self.ai_eval_size]]
        return optional_stage("llm", lambda: self.llm.analyze_books(query, top_books), dict)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def ai_search(self, query: str) -> SearchResponse:
        """AI-enriched search.

        Raises:
            Exception: Only when hybrid retrieval fails
        """
        cache_key = self.cache.key("ai", query)
        cached = self.cache.get(cache_key, SearchResponse)
        if cached is not None:
            logger.info(f"AI search cache hit: key={cache_key}")
            return cached

        refined_query = self.preprocessor.extract_keywords(query)
        vector = self._embed(refined_query).unwrap()

        candidates = self._retrieve(refined_query, vector).unwrap()
        if not candidates:
            logger.info(f"AI search found nothing: refined='{refined_query}'")
            return SearchResponse.empty()

        ranked = self._rerank(refined_query, candidates).unwrap()
        ai_results = self._analyze(query, ranked).unwrap()

        response = assemble_ai_result(ranked, ai_results, self.result_cap)

        if ai_results:
            self.cache.set(cache_key, response, self.cache_ttl_seconds)
        else:
            logger.info(f"AI analysis empty; not caching key={cache_key}")

        logger.info(
            f"AI search done: refined='{refined_query}', candidates={len(candidates)}, "
            f"analyzed={len(ai_results)}, returned={len(response.book_list)}"
        )
        return response

    def basic_search(self, query: str) -> SearchResponse:
        """Keyword + vector search without reranking or LLM analysis.

        Raises:
            Exception: Only when retrieval (or the ISBN lookup) fails
        """
        stripped = (query or "").strip()
        if ISBN_QUERY.match(stripped):
            isbn = stripped.replace("-", "")
            logger.info(f"ISBN lookup: {isbn}")
            document = mandatory_stage("isbn_lookup", lambda: self.store.find_by_isbn(isbn)).unwrap()
            if document is None:
                return SearchResponse.empty()
            return assemble_basic_result([SearchCandidate(book=document)], cap=self.result_cap)

        refined_query = self.preprocessor.extract_keywords(query)
        vector = self._embed(refined_query).unwrap()
        candidates = self._retrieve(refined_query, vector).unwrap()
        return assemble_basic_result(candidates, cap=self.result_cap)
