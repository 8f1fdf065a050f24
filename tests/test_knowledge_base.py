"""
Unit tests for knowledge-base retrieval.

Tests cover:
- Keyword extraction
- Relevance scoring weights
- Search fallbacks
- Ranking and truncation
"""

import pytest
from unittest.mock import Mock

from ticket_triage.knowledge_base import (
    KnowledgeRetriever,
    RetrievalError,
    calculate_relevance_score,
    extract_keywords,
)
from ticket_triage.models import Article, ArticleStatus, Category
from ticket_triage.stores import InMemoryArticleStore


# =============================================================================
# Keyword Extraction Tests
# =============================================================================

class TestExtractKeywords:
    """Tests for extract_keywords."""

    def test_drops_stopwords_and_short_tokens(self):
        """Stopwords and tokens under three characters are removed."""
        assert extract_keywords("I am at the DOOR of my house") == ["door", "house"]

    def test_strips_punctuation(self):
        assert extract_keywords("Error: login-page crashed!") == ["error", "login", "page", "crashed"]

    def test_keeps_duplicates_in_order(self):
        assert extract_keywords("refund refund charge") == ["refund", "refund", "charge"]

    def test_caps_at_ten(self):
        text = " ".join(f"word{n}" for n in range(15))
        keywords = extract_keywords(text)
        assert len(keywords) == 10
        assert keywords[0] == "word0"

    def test_empty(self):
        assert extract_keywords("") == []


# =============================================================================
# Relevance Scoring Tests
# =============================================================================

class TestRelevanceScore:
    """Tests for calculate_relevance_score."""

    @pytest.fixture
    def article(self) -> Article:
        return Article(
            title="Refund policy",
            body="We refund duplicate charges quickly",
            tags=["billing"],
            category=Category.BILLING,
        )

    def test_keyword_weights(self, article):
        """Title 3, body 1, tag 2."""
        assert calculate_relevance_score("zzz", article, ["refund"]) == 4.0
        assert calculate_relevance_score("zzz", article, ["billing"]) == 2.0
        assert calculate_relevance_score("zzz", article, ["duplicate"]) == 1.0

    def test_phrase_bonus(self, article):
        """Two-word phrases score 5 in the title and 2 in the body."""
        assert calculate_relevance_score("refund policy", article, []) == 5.0
        assert calculate_relevance_score("duplicate charges", article, []) == 2.0

    def test_category_mention(self, article):
        assert calculate_relevance_score("billing", article, []) == 1.0

    def test_no_overlap(self, article):
        assert calculate_relevance_score("hello", article, ["hello"]) == 0.0


# =============================================================================
# Retriever Tests
# =============================================================================

class TestKnowledgeRetriever:
    """Tests for KnowledgeRetriever."""

    def test_finds_category_articles(self, populated_articles):
        retriever = KnowledgeRetriever(populated_articles)

        results = retriever.find_relevant_articles(
            "I was charged twice, please refund the duplicate charge", Category.BILLING
        )

        assert [a.id for a in results] == ["kb-refund"]
        assert results[0].relevance_score > 0

    def test_empty_corpus(self):
        """No articles means an empty result, not an error."""
        retriever = KnowledgeRetriever(InMemoryArticleStore())
        assert retriever.find_relevant_articles("refund my charge", Category.BILLING) == []

    def test_falls_back_to_scan(self):
        """Partial words miss the index but hit the substring scan."""
        store = Mock()
        store.search.return_value = []
        store.scan.return_value = []
        retriever = KnowledgeRetriever(store)

        retriever.search_articles("refund charge", Category.BILLING, 5)

        store.search.assert_called_once_with("refund charge", Category.BILLING, 5)
        store.scan.assert_called_once_with(["refund", "charge"], Category.BILLING, 5)

    def test_empty_query_returns_recent(self):
        store = Mock()
        store.recent.return_value = []
        retriever = KnowledgeRetriever(store)

        retriever.search_articles("   ", None, 3)

        store.recent.assert_called_once_with(None, 3)
        store.search.assert_not_called()

    def test_store_error_wrapped(self):
        store = Mock()
        store.search.side_effect = ConnectionError("index offline")
        retriever = KnowledgeRetriever(store)

        with pytest.raises(RetrievalError, match="index offline"):
            retriever.find_relevant_articles("refund", Category.BILLING)

    def test_ranked_and_truncated(self, article_store):
        """Results are re-ranked by relevance and cut to the limit."""
        for n, title in enumerate(["Other topic refund", "Refund guide", "Refund duplicate charge guide"]):
            article_store.add(Article(
                id=f"a{n}",
                title=title,
                body="refund",
                status=ArticleStatus.PUBLISHED,
                category=Category.BILLING,
            ))
        retriever = KnowledgeRetriever(article_store, default_limit=2)

        results = retriever.find_relevant_articles("duplicate charge refund", Category.BILLING)

        assert len(results) == 2
        assert results[0].id == "a2"
        scores = [a.relevance_score for a in results]
        assert scores == sorted(scores, reverse=True)
