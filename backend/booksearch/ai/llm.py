"""Gemini-backed book analysis.

Two callers use the model differently:

- LlmAnalysisClient (query pipeline): judges how well the top few search
  results answer a user query. It goes through the llm circuit breaker, and any
  failure surfaces as LlmAnalysisError so the orchestrator can fall back to an
  empty result.
- BulkBookAnalyzer (indexing worker): writes a review summary (or a query
  match) for a batch of books. It calls Gemini without the retrying breaker
  so a 429 reaches the worker at once as RateLimitError and takes the
  long-delay retry path.

The model is asked for bare JSON keyed by ISBN but sometimes wraps its answer
in a markdown code fence; strip_code_fence removes it before parsing.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from booksearch.config import settings
from booksearch.errors import LlmAnalysisError, ProviderError, RateLimitError
from booksearch.models import AiResult, AnalysisMode, BookAiReview, BookDocument
from booksearch.resilience import CircuitBreaker, llm_circuit_breaker
from booksearch.text_utils import clean_author_name, strip_html, truncate

logger = logging.getLogger(__name__)

EMPTY_JSON = "{}"
EVAL_DESCRIPTION_CHARS = 150

_FENCE_OPEN = re.compile(r"^\s*```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```\s*$")


def strip_code_fence(text: Optional[str]) -> str:
    """Remove a surrounding ```json ... ``` fence, if any."""
    if text is None:
        return ""
    text = _FENCE_OPEN.sub("", text)
    text = _FENCE_CLOSE.sub("", text)
    return text.strip()


def _extract_text(data: Any) -> str:
    """candidates[0].content.parts[0].text, or "{}" when the shape is unexpected."""
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        logger.warning("Gemini response shape was not as expected; treating as empty")
        return EMPTY_JSON
    return text if isinstance(text, str) else EMPTY_JSON


class GeminiClient:
    """Minimal client for the Gemini generateContent endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.url = url or settings.gemini_url
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self._client = client or httpx.Client(
            timeout=timeout_seconds or settings.gemini_timeout_seconds
        )
        self._breaker = breaker

    def _request(self, prompt: str) -> str:
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            response = self._client.post(self.url, params={"key": self.api_key}, json=body)
        except httpx.TransportError as e:
            raise ProviderError("gemini", f"request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitError("gemini", f"quota exceeded: {response.text[:800]}")
        if response.status_code >= 400:
            raise ProviderError(
                "gemini", f"HTTP {response.status_code} {response.text[:800]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError:
            logger.warning("Gemini response body is not JSON; treating as empty")
            return EMPTY_JSON
        return _extract_text(data)

    def generate(self, prompt: str) -> str:
        """Send prompt and return the model's raw text answer.

        Raises:
            RateLimitError: HTTP 429
            ProviderError: Any other HTTP or transport failure
        """
        if self._breaker is not None:
            return self._breaker.call(self._request, prompt)
        return self._request(prompt)

    def close(self) -> None:
        self._client.close()


# =============================================================================
# Query-time relevance analysis
# =============================================================================

def build_evaluation_prompt(query: str, books: Sequence[BookDocument]) -> str:
    lines = []
    for book in books:
        description = strip_html(book.description)[:EVAL_DESCRIPTION_CHARS]
        lines.append(f"| ISBN: {book.isbn} | 제목: {book.title} | 설명: {description}... |")
    book_info = "\n".join(lines)

    return f"""질문: "{query}"
아래 목록(총 {len(books)}권)을 분석해.

[규칙]
1. matchRate: 질문 관련성(0~99). 관련이 거의 없으면 10을 기본으로 줄 것.
2. reason: 질문('{query}')과의 연결고리를 분명히 하여 이 책을 추천하는 핵심 근거를 설명한 문장(한국어, 100자 이내, 줄바꿈 금지).
3. 모든 책을 포함해서 각각에 대해 작성할 것. 점수가 낮아도 절대 제외하지 말 것.
4. 결과는 JSON만 반환. key는 ISBN, value는 {{"reason": "...", "matchRate": NN}}.

[도서 목록]
{book_info}

[예시]
{{
  "9791162244222": {{"reason": "실무 예제가 많아 질문 실무적용에 도움", "matchRate": 95}}
}}
"""


def parse_match_results(raw: Optional[str]) -> Dict[str, AiResult]:
    """Parse `{isbn: {reason, matchRate}}`.

    Blank text and "{}" are a valid "no opinion" answer and give an empty map.

    Raises:
        ValueError: The text is not a JSON object (json.JSONDecodeError is a ValueError)
    """
    text = strip_code_fence(raw)
    if not text or text == EMPTY_JSON:
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object keyed by ISBN, got {type(data).__name__}")

    results = {}
    for isbn, value in data.items():
        if not isinstance(value, dict):
            logger.debug(f"Skipping non-object analysis entry for {isbn}")
            continue
        try:
            results[str(isbn)] = AiResult.model_validate(value)
        except ValidationError as e:
            logger.debug(f"Skipping invalid analysis entry for {isbn}: {e}")
    return results


class LlmAnalysisClient:
    """Asks the LLM why each of the top search results fits the user's query."""

    def __init__(self, gemini: Optional[GeminiClient] = None):
        self._gemini = gemini or GeminiClient(breaker=llm_circuit_breaker)

    def analyze_books(self, query: str, books: Sequence[BookDocument]) -> Dict[str, AiResult]:
        """Judge each book against query.

        Returns:
            Map of ISBN -> AiResult; empty when the model declines to answer

        Raises:
            LlmAnalysisError: Provider failure or an unparseable answer
        """
        if not books:
            return {}
        try:
            raw = self._gemini.generate(build_evaluation_prompt(query, books))
            results = parse_match_results(raw)
        except Exception as e:
            raise LlmAnalysisError(f"Gemini analysis failed: {e}") from e

        if not results:
            logger.warning(f"LLM returned no analysis for query='{query}'")
        return results


# =============================================================================
# Worker bulk analysis
# =============================================================================

@dataclass
class BookSummary:
    """What the bulk prompt needs to know about one book."""
    isbn: str
    title: str = ""
    author: str = ""
    description: str = ""


_REVIEW_PROMPT = """너는 도서 쇼핑몰의 전문 도서 분석 AI다. 다음 책 목록(JSON)을 보고 분석하여 결과를 반환하라.

[분석 규칙]
1. 결과는 반드시 ISBN을 key로 갖는 JSON 객체여야 한다.
2. 각 책마다 'pros', 'cons', 'recommendedFor' (각각 문자열 배열)를 포함하라.
3. 책 설명이 없거나 부족하면 "정보 부족", "판단 불가" 같은 말 대신 제목, 저자로 일반적인 장단점을 유추하여 작성하라.
4. 모든 항목은 핵심 키워드 위주의 명사형 종결(개조식)로 작성하라. (예: "친절하고 쉬운 설명")
5. 각 항목은 공백 포함 20자 내외로 짧게 작성하라.
6. 응답은 오직 JSON 문자열만 출력하라. (마크다운, 코드블럭 금지)

[도서 목록]
{books}

[출력 예시]
{{
  "9791162244222": {{
    "pros": ["직관적인 예제 구성", "입문자 맞춤형 난이도"],
    "cons": ["심화 내용 부족"],
    "recommendedFor": ["C언어 입문자", "비전공자"]
  }}
}}
"""

_MATCH_PROMPT = """너는 도서 쇼핑몰의 전문 도서 분석 AI다. 사용자 질문과 다음 책 목록(JSON)의 관련성을 평가하라.

질문: "{query}"

[분석 규칙]
1. 결과는 반드시 ISBN을 key로 갖는 JSON 객체여야 한다.
2. 각 책마다 'reason'(한국어, 100자 이내, 줄바꿈 금지)과 'matchRate'(0~99 정수)를 포함하라.
3. 관련이 거의 없으면 matchRate는 10으로 하라. 어떤 책도 제외하지 마라.
4. 응답은 오직 JSON 문자열만 출력하라. (마크다운, 코드블럭 금지)

[도서 목록]
{books}

[출력 예시]
{{
  "9791162244222": {{"reason": "실무 예제가 많아 질문 실무적용에 도움", "matchRate": 95}}
}}
"""


class BulkBookAnalyzer:
    """Analyzes a batch of books in one Gemini call for the indexing worker."""

    def __init__(
        self,
        gemini: Optional[GeminiClient] = None,
        description_max_chars: Optional[int] = None,
    ):
        self._gemini = gemini or GeminiClient(timeout_seconds=settings.gemini_bulk_timeout_seconds)
        self.description_max_chars = description_max_chars or settings.ai_bulk_description_max_chars

    def build_prompt(
        self,
        books: Sequence[BookSummary],
        mode: AnalysisMode = AnalysisMode.REVIEW,
        query: Optional[str] = None,
    ) -> str:
        entries = []
        for book in books:
            entry = asdict(book)
            entry["description"] = truncate(strip_html(book.description), self.description_max_chars)
            entries.append(entry)
        books_json = json.dumps(entries, ensure_ascii=False)
        if mode == AnalysisMode.MATCH:
            return _MATCH_PROMPT.format(query=query or "", books=books_json)
        return _REVIEW_PROMPT.format(books=books_json)

    def analyze_bulk(
        self,
        books: Sequence[BookSummary],
        mode: AnalysisMode = AnalysisMode.REVIEW,
        query: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Analyze books in one request.

        Returns:
            ISBN -> BookAiReview (REVIEW mode) or ISBN -> AiResult (MATCH mode)

        Raises:
            RateLimitError: Gemini quota exhausted
            ProviderError: Any other provider failure, or an answer that is not
                a JSON object
        """
        if not books:
            return {}

        raw = self._gemini.generate(self.build_prompt(books, mode, query))

        if mode == AnalysisMode.MATCH:
            try:
                return parse_match_results(raw)
            except ValueError as e:
                raise ProviderError("gemini", f"unparseable bulk match result: {e}") from e

        text = strip_code_fence(raw)
        if not text or text == EMPTY_JSON:
            return {}
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ProviderError("gemini", f"unparseable bulk review result: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError("gemini", f"bulk review result is a {type(data).__name__}, not an object")

        reviews: Dict[str, BookAiReview] = {}
        for isbn, value in data.items():
            if not isinstance(value, dict):
                continue
            try:
                reviews[str(isbn)] = BookAiReview.model_validate(value)
            except ValidationError as e:
                logger.debug(f"Skipping invalid review entry for {isbn}: {e}")
        return reviews


def summaries_from_sources(sources: Dict[str, Dict[str, Any]]) -> List[BookSummary]:
    """Turn fetched `_source` dicts (keyed by ISBN) into prompt summaries.

    Author role words such as "(지은이)" and "옮김" are removed.
    """
    return [
        BookSummary(
            isbn=isbn,
            title=source.get("title") or "",
            author=clean_author_name(source.get("author")),
            description=source.get("description") or "",
        )
        for isbn, source in sources.items()
    ]
