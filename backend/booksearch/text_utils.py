"""Small text helpers shared by the indexing worker and the query pipeline."""

import re
from datetime import date
from typing import Optional

HTML_TAGS = re.compile(r"<[^>]*>")
WHITESPACE = re.compile(r"\s+")

# Contributor role words that appear inside catalog author strings
AUTHOR_ROLES = re.compile(
    r"(지음|지은이|옮김|옮긴이|글쓴이|그림|그린이|엮음|엮은이|편집|감수|공연구책임)"
)


def is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def truncate(text: Optional[str], max_chars: int, suffix: str = "") -> str:
    """Cut text to max_chars, appending suffix only when something was cut."""
    if text is None:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + suffix


def strip_html(content: Optional[str]) -> str:
    if content is None:
        return ""
    return WHITESPACE.sub(" ", HTML_TAGS.sub(" ", content)).strip()


def clean_author_name(original: Optional[str]) -> str:
    """Normalise a catalog author string: "홍길동 (지은이); 김철수 옮김" -> "홍길동, 김철수"."""
    if is_blank(original):
        return ""
    normalized = re.sub(r"[;/|]", ",", original)
    normalized = re.sub(r"\(.*?\)|\[.*?\]", "", normalized)
    normalized = AUTHOR_ROLES.sub(" ", normalized)
    normalized = WHITESPACE.sub(" ", normalized).strip()
    names = [name.strip() for name in normalized.split(",") if name.strip()]
    return ", ".join(names) if names else normalized


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse an ISO date (time part ignored); None when unparseable."""
    if is_blank(value):
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def build_embedding_text(
    title: Optional[str],
    author: Optional[str],
    publisher: Optional[str],
    description: Optional[str],
) -> str:
    """Build the embedding input from the non-blank book fields.

    Each present field goes under its own label so the embedding model sees
    the same structure for every book. Returns "" when every field is blank.
    """
    sections = (
        ("TITLE", title),
        ("AUTHOR", author),
        ("PUBLISHER", publisher),
        ("DESCRIPTION", strip_html(description)),
    )
    parts = [f"[{label}]\n{value.strip()}" for label, value in sections if not is_blank(value)]
    return "\n\n".join(parts)

