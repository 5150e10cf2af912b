"""Query-time search pipeline.

Usage:
    from booksearch.search import SearchOrchestrator

    orchestrator = SearchOrchestrator()
    response = orchestrator.basic_search("978-89-6626-262-6")
"""

from booksearch.search.cache import CacheKeyGenerator, QueryCache
from booksearch.search.orchestrator import SearchOrchestrator
from booksearch.search.preprocessor import QueryPreprocessor

__all__ = [
    "SearchOrchestrator",
    "QueryCache",
    "CacheKeyGenerator",
    "QueryPreprocessor",
]
