"""
Knowledge-base retrieval for the triage pipeline.

Extracts keywords from ticket text, searches the article store (indexed
full-text first, substring scan as fallback) and re-ranks candidates with a
weighted keyword/phrase overlap score.
"""

import logging
import re
from typing import Optional

from .models import Article, Category
from .stores import ArticleStore


logger = logging.getLogger(__name__)


class RetrievalError(Exception):
    """Error while searching the knowledge base."""
    pass


STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "up", "about", "into", "through", "during",
    "before", "after", "above", "below", "between", "among", "within",
    "is", "are", "was", "were", "be", "been", "being", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should", "may", "might",
    "must", "can", "i", "you", "he", "she", "it", "we", "they", "me", "him",
    "her", "us", "them", "my", "your", "his", "our", "their", "this", "that",
    "these", "those",
})

MAX_KEYWORDS = 10
MIN_KEYWORD_LENGTH = 3

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_PHRASE_RE = re.compile(r"\b\w+\s+\w+\b")

# Relevance weights
TITLE_KEYWORD_WEIGHT = 3
BODY_KEYWORD_WEIGHT = 1
TAG_KEYWORD_WEIGHT = 2
TITLE_PHRASE_WEIGHT = 5
BODY_PHRASE_WEIGHT = 2
CATEGORY_MENTION_WEIGHT = 1


def extract_keywords(text: str) -> list[str]:
    """
    Extract up to ten lowercase keywords in order of appearance.

    Punctuation is replaced by spaces; stopwords and tokens shorter than
    three characters are dropped. Duplicates are kept.
    """
    cleaned = _PUNCTUATION_RE.sub(" ", text.lower())
    keywords = [
        word for word in cleaned.split()
        if len(word) >= MIN_KEYWORD_LENGTH and word not in STOPWORDS
    ]
    return keywords[:MAX_KEYWORDS]


def calculate_relevance_score(text: str, article: Article, keywords: list[str]) -> float:
    """
    Score how well an article matches ticket text.

    Args:
        text: Original ticket text.
        article: Candidate article.
        keywords: Keywords extracted from ``text``.

    Returns:
        Non-negative relevance score.
    """
    score = 0
    text_lower = text.lower()
    title = article.title.lower()
    body = article.body.lower()
    tags = [tag.lower() for tag in article.tags]

    for keyword in keywords:
        if keyword in title:
            score += TITLE_KEYWORD_WEIGHT
        if keyword in body:
            score += BODY_KEYWORD_WEIGHT
        if any(keyword in tag for tag in tags):
            score += TAG_KEYWORD_WEIGHT

    # Consecutive two-word phrases found verbatim
    for phrase in _PHRASE_RE.findall(text_lower):
        if phrase in title:
            score += TITLE_PHRASE_WEIGHT
        if phrase in body:
            score += BODY_PHRASE_WEIGHT

    if article.category.value in text_lower:
        score += CATEGORY_MENTION_WEIGHT

    return float(score)


class KnowledgeRetriever:
    """
    Finds and ranks knowledge-base articles for ticket text.

    Store errors surface as ``RetrievalError``; the orchestrator decides
    whether that is fatal (it is not).
    """

    def __init__(self, store: ArticleStore, default_limit: int = 5):
        self._store = store
        self._default_limit = default_limit

    def extract_keywords(self, text: str) -> list[str]:
        return extract_keywords(text)

    def search_articles(
        self,
        query: str,
        category: Optional[Category] = None,
        limit: int = 10,
    ) -> list[Article]:
        """
        Search published articles.

        An empty query returns the most recently updated articles. Otherwise
        the indexed search runs first and the substring scan is used only
        when it finds nothing.
        """
        try:
            if not query or not query.strip():
                return self._store.recent(category, limit)

            results = self._store.search(query, category, limit)
            if results:
                return results

            logger.debug(f"Full-text search found nothing for '{query}', falling back to scan")
            return self._store.scan(query.split(), category, limit)

        except Exception as e:
            logger.error(f"Knowledge base search error: {e}")
            raise RetrievalError(f"Failed to search knowledge base: {e}") from e

    def find_relevant_articles(
        self,
        text: str,
        category: Optional[Category] = None,
        limit: Optional[int] = None,
    ) -> list[Article]:
        """
        Find articles relevant to ticket text, best first.

        Args:
            text: Ticket text.
            category: Restrict the search to this category.
            limit: Maximum number of articles to return.

        Returns:
            Articles with ``relevance_score`` set, sorted by descending
            score. Equal scores keep search order.
        """
        limit = limit or self._default_limit
        keywords = self.extract_keywords(text)
        candidates = self.search_articles(" ".join(keywords), category, limit)

        scored = [
            article.model_copy(
                update={"relevance_score": calculate_relevance_score(text, article, keywords)}
            )
            for article in candidates
        ]
        scored.sort(key=lambda a: a.relevance_score, reverse=True)

        logger.debug(
            f"Retrieved {len(scored)} articles for keywords {keywords} "
            f"(category: {category.value if category else 'any'})"
        )
        return scored[:limit]
