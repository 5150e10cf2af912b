"""Search response cache over Redis.

Cache keys are normalised so that queries with the same keywords share an
entry regardless of word order or filler words:

    key("ai", "스프링 부트 추천")     -> "ai:부트:스프링"
    key("ai", "부트 스프링 추천해줘")  -> "ai:부트:스프링"

Keywords are the noun, foreign-word and number morphemes found by the Komoran
tagger (konlpy), minus a stop-word list, sorted. A query with no surviving
keyword falls back to its cleaned text with spaces replaced by underscores,
and so does any query the tagger fails on.

The cache is strictly best-effort: get() and set() log and swallow Redis and
(de)serialization errors, so a cache outage only costs latency.
"""

import logging
import re
from typing import Iterable, List, Optional, Tuple, Type, TypeVar

import redis
from konlpy.tag import Komoran
from pydantic import BaseModel, ValidationError

from booksearch.config import settings
from booksearch.redis_client import get_redis_client

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

STOP_WORDS = frozenset({
    "추천", "책", "도서", "좀", "해줘", "알려줘", "찾아줘", "무슨", "어떤", "검색",
})
KEYWORD_TAG_PREFIXES = ("NN", "SL", "SN")
_NON_WORD = re.compile(r"[^가-힣a-zA-Z0-9]")
_WHITESPACE = re.compile(r"\s+")


class CacheKeyGenerator:
    """Builds order-independent cache keys from free-text queries.

    Args:
        tagger: Object with a konlpy-style `pos(text) -> [(morph, tag), ...]`.
            Defaults to Komoran, created on first use because it starts a JVM.
    """

    def __init__(self, tagger=None):
        self._tagger = tagger

    @property
    def tagger(self):
        if self._tagger is None:
            logger.info("Loading Komoran tagger")
            self._tagger = Komoran()
        return self._tagger

    def keywords(self, clean_query: str) -> List[str]:
        tokens: Iterable[Tuple[str, str]] = self.tagger.pos(clean_query)
        return sorted(
            morph
            for morph, tag in tokens
            if tag.startswith(KEYWORD_TAG_PREFIXES) and morph not in STOP_WORDS
        )

    def generate_key(self, search_type: str, query: Optional[str]) -> str:
        """Return "<search_type>:<normalised query>"."""
        clean_query = _NON_WORD.sub(" ", query or "")
        keywords: List[str] = []
        if clean_query.strip():
            try:
                keywords = self.keywords(clean_query)
            except Exception as e:
                # Tagger unavailable (no JVM) or failed on this input
                logger.warning(f"Keyword extraction failed, using plain key: {e}")
        if keywords:
            normalized = ":".join(keywords)
        else:
            normalized = _WHITESPACE.sub("_", clean_query.strip())
        return f"{search_type}:{normalized}"


class QueryCache:
    """Read-through JSON cache for search responses."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        key_generator: Optional[CacheKeyGenerator] = None,
    ):
        self._client = client
        self.key_generator = key_generator or CacheKeyGenerator()

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    def key(self, search_type: str, query: str) -> str:
        return self.key_generator.generate_key(search_type, query)

    def get(self, key: str, model_cls: Type[M]) -> Optional[M]:
        """Cached value for key, or None on a miss or any read/decoding error."""
        try:
            data = self.client.get(key)
            if data is None or not str(data).strip():
                return None
            return model_cls.model_validate_json(data)
        except (redis.RedisError, ValidationError, ValueError) as e:
            logger.warning(f"Cache read failed for key={key}: {e}")
            return None

    def set(self, key: str, value: BaseModel, ttl_seconds: Optional[int] = None) -> None:
        """Store value under key with a TTL; failures are logged and dropped."""
        ttl = ttl_seconds or settings.ai_search_cache_ttl_seconds
        try:
            payload = value.model_dump_json(by_alias=True)
            self.client.setex(key, ttl, payload)
            logger.debug(f"Cached key={key} (ttl={ttl}s)")
        except (redis.RedisError, ValueError, TypeError) as e:
            logger.warning(f"Cache write failed for key={key}: {e}")
