"""Query refinement: turn a conversational request into search keywords.

"c언어 공부하고 싶은데 도움이 될만한 책 추천해줘" -> "C언어"
"""

import re
from typing import List, Tuple

from booksearch.text_utils import WHITESPACE

# Canonical spelling of tech terms, matched case-insensitively as whole words
CAPITALIZATION_FIXES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"c언어", re.IGNORECASE), "C언어"),
    (re.compile(r"(?<![a-zA-Z])c\+\+", re.IGNORECASE), "C++"),
    (re.compile(r"(?<![a-zA-Z])c#", re.IGNORECASE), "C#"),
    (re.compile(r"(?<![a-zA-Z])sql(?![a-zA-Z])", re.IGNORECASE), "SQL"),
    (re.compile(r"(?<![a-zA-Z])msa(?![a-zA-Z])", re.IGNORECASE), "MSA"),
    (re.compile(r"(?<![a-zA-Z])jpa(?![a-zA-Z])", re.IGNORECASE), "JPA"),
    (re.compile(r"(?<![a-zA-Z])api(?![a-zA-Z])", re.IGNORECASE), "API"),
]

# Filler phrases, longest first so "공부하고 싶은데" goes before "싶은데"
STOP_PATTERNS = (
    "도움이 될만한", "도움되는", "도움 되는",
    "공부하고 싶은데", "공부하고 싶어", "공부하고", "공부하는데",
    "추천 좀 해줄수 있어", "추천해줄수 있어", "해줄수 있어", "할수 있어",
    "추천해줘", "추천해", "추천 좀", "알려줘", "찾아줘",
    "에 대해서", "에 대해", "관련된", "관련한", "관련",
    "싶은데", "싶은", "싶어",
    "책", "도서", "교재", "좀", "해줘", "있는",
)

# Keep + and # so C++ and C# survive
_DISALLOWED = re.compile(r"[^a-zA-Z0-9가-힣\s+#]")


class QueryPreprocessor:
    """Extracts search keywords from a natural-language query."""

    def fix_capitalization(self, query: str) -> str:
        for pattern, replacement in CAPITALIZATION_FIXES:
            query = pattern.sub(replacement, query)
        return query

    def extract_keywords(self, sentence: str) -> str:
        """Refine sentence into keywords.

        Falls back to the whitespace-collapsed sentence when refinement would
        leave nothing to search for.
        """
        if sentence is None or not sentence.strip():
            return ""

        refined = self.fix_capitalization(sentence)
        for pattern in STOP_PATTERNS:
            refined = refined.replace(pattern, " ")
        refined = _DISALLOWED.sub(" ", refined)
        refined = WHITESPACE.sub(" ", refined).strip()

        if not refined:
            return WHITESPACE.sub(" ", sentence).strip()
        return refined
