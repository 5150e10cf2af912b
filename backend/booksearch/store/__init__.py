"""Document store adapters."""

from booksearch.store.elasticsearch import ElasticsearchBookStore, build_hybrid_query

__all__ = ["ElasticsearchBookStore", "build_hybrid_query"]
