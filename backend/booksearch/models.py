"""Pydantic models for queue messages, stored documents and search responses"""
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional, List, Any

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator

from booksearch.text_utils import parse_date


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Queue messages
# =============================================================================

class BookPayload(_CamelModel):
    id: Optional[int] = Field(None, description="Catalog primary key")
    isbn: Optional[str] = Field(None, description="ISBN, used as the document id")
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    description: Optional[str] = None
    pub_date: Optional[date] = Field(None, alias="pubDate")
    price: Optional[int] = None
    categories: List[str] = Field(default_factory=list)
    image_url: Optional[str] = Field(None, alias="imageUrl")
    publisher_id: Optional[int] = Field(None, alias="publisherId")
    category_id: Optional[int] = Field(None, alias="categoryId")

    @field_validator("pub_date", mode="before")
    @classmethod
    def _lenient_date(cls, value: Any) -> Any:
        # Blank or malformed catalog dates are dropped rather than failing the message
        if isinstance(value, str):
            return parse_date(value)
        return value


class BookUpsertMessage(_CamelModel):
    request_id: Optional[str] = Field(None, alias="requestId")
    book: Optional[BookPayload] = None
    ts: Optional[int] = None
    reason: Optional[str] = None


class BookDeleteMessage(_CamelModel):
    request_id: Optional[str] = Field(None, alias="requestId")
    isbn: Optional[str] = None
    ts: Optional[int] = None
    reason: Optional[str] = None


class AnalysisMode(str, Enum):
    REVIEW = "REVIEW"  # pros / cons / recommendedFor
    MATCH = "MATCH"    # reason / matchRate against a query


class AiAnalysisRequestMessage(_CamelModel):
    request_id: Optional[str] = Field(None, alias="requestId")
    isbns: Optional[List[str]] = None
    timestamp: Optional[int] = None
    mode: AnalysisMode = AnalysisMode.REVIEW
    query: Optional[str] = Field(None, description="User query, required for MATCH mode")


# =============================================================================
# AI analysis results
# =============================================================================

class AiResult(_CamelModel):
    """Per-book relevance judgement for a user query."""
    reason: str = ""
    match_rate: int = Field(10, alias="matchRate")

    @field_validator("match_rate", mode="before")
    @classmethod
    def _clamp_match_rate(cls, value: Any) -> int:
        try:
            rate = int(round(float(value)))
        except (TypeError, ValueError):
            return 10
        return max(0, min(99, rate))


class BookAiReview(_CamelModel):
    """Per-book review summary produced by bulk analysis."""
    pros: List[str] = Field(default_factory=list)
    cons: List[str] = Field(default_factory=list)
    recommended_for: List[str] = Field(default_factory=list, alias="recommendedFor")


# =============================================================================
# Stored documents and search candidates
# =============================================================================

class BookDocument(_CamelModel):
    """A book as stored in the search index (vector field excluded on reads)."""
    id: Optional[str] = None
    isbn: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    pub_date: Optional[date] = Field(None, alias="pubDate")
    price: Optional[int] = None
    image_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("image_url", "imageUrl")
    )
    publisher_id: Optional[int] = Field(
        None, validation_alias=AliasChoices("publisherId", "publisher_id")
    )
    category_id: Optional[int] = Field(
        None, validation_alias=AliasChoices("categoryId", "category_id")
    )

    @field_validator("pub_date", mode="before")
    @classmethod
    def _lenient_date(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_date(value)
        return value

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @field_validator("categories", mode="before")
    @classmethod
    def _categories_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


@dataclass
class SearchCandidate:
    """A retrieved book plus the score of the last stage that touched it."""
    book: BookDocument
    score: float = 0.0
    justification: Optional[str] = None


# =============================================================================
# Search responses
# =============================================================================

class BookResponse(_CamelModel):
    id: Optional[str] = None
    isbn: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    price: Optional[int] = None
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    image_url: Optional[str] = Field(None, alias="imageUrl")
    ai_answer: Optional[str] = Field(None, alias="aiAnswer")
    match_rate: float = Field(0.0, alias="matchRate")
    publisher_id: Optional[int] = Field(None, alias="publisherId")
    category_id: Optional[int] = Field(None, alias="categoryId")


class SearchResponse(_CamelModel):
    book_list: List[BookResponse] = Field(default_factory=list, alias="bookList")

    @classmethod
    def empty(cls) -> "SearchResponse":
        return cls(book_list=[])
