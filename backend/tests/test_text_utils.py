"""Tests for shared text helpers and the query preprocessor."""

from datetime import date

import pytest

from booksearch.search.preprocessor import QueryPreprocessor
from booksearch.text_utils import (
    build_embedding_text,
    clean_author_name,
    is_blank,
    parse_date,
    strip_html,
    truncate,
)

pytestmark = pytest.mark.unit


class TestTextHelpers:
    def test_is_blank(self):
        assert is_blank(None)
        assert is_blank(" \n\t")
        assert not is_blank(" a ")

    def test_truncate(self):
        assert truncate("abcdef", 3) == "abc"
        assert truncate("abcdef", 3, "...") == "abc..."
        assert truncate("abc", 3, "...") == "abc"
        assert truncate(None, 3) == ""

    def test_strip_html(self):
        assert strip_html("<p>스프링<br/>부트</p>") == "스프링 부트"
        assert strip_html(None) == ""

    def test_clean_author_name(self):
        assert clean_author_name("홍길동 (지은이); 김철수 옮김") == "홍길동, 김철수"
        assert clean_author_name("Robert C. Martin 지음") == "Robert C. Martin"
        assert clean_author_name(None) == ""

    def test_parse_date(self):
        assert parse_date("2021-03-02") == date(2021, 3, 2)
        assert parse_date("2021-03-02T10:00:00") == date(2021, 3, 2)
        assert parse_date("03/02/2021") is None
        assert parse_date("") is None


class TestBuildEmbeddingText:
    def test_all_fields(self):
        text = build_embedding_text("제목", "저자", "출판사", "<b>설명</b>")
        assert text == "[TITLE]\n제목\n\n[AUTHOR]\n저자\n\n[PUBLISHER]\n출판사\n\n[DESCRIPTION]\n설명"

    def test_blank_fields_are_skipped(self):
        assert build_embedding_text(" 제목 ", None, "  ", None) == "[TITLE]\n제목"

    def test_everything_blank(self):
        assert build_embedding_text(None, "", " ", "<p></p>") == ""


class TestQueryPreprocessor:
    @pytest.fixture
    def preprocessor(self):
        return QueryPreprocessor()

    def test_conversational_request(self, preprocessor):
        assert preprocessor.extract_keywords("c언어 공부하고 싶은데 도움이 될만한 책 추천해줘") == "C언어"

    def test_tech_terms_are_capitalised(self, preprocessor):
        assert preprocessor.extract_keywords("jpa 와 sql 관련 도서") == "JPA 와 SQL"
        assert preprocessor.extract_keywords("c++ 입문") == "C++ 입문"
        assert preprocessor.extract_keywords("c# 게임 개발") == "C# 게임 개발"

    def test_words_containing_terms_are_untouched(self, preprocessor):
        assert preprocessor.extract_keywords("MySQL 튜닝") == "MySQL 튜닝"
        assert preprocessor.extract_keywords("rapid 개발") == "rapid 개발"

    def test_punctuation_is_removed(self, preprocessor):
        assert preprocessor.extract_keywords("스프링 부트?! (입문)") == "스프링 부트 입문"

    def test_only_filler_falls_back_to_original(self, preprocessor):
        assert preprocessor.extract_keywords("책  추천해줘") == "책 추천해줘"

    def test_blank(self, preprocessor):
        assert preprocessor.extract_keywords("   ") == ""
        assert preprocessor.extract_keywords(None) == ""
