"""
Storage contracts consumed by the triage pipeline.

The pipeline only talks to these abstract stores; the in-memory
implementations back the CLI and the test suite. All in-memory stores are
guarded by a lock because audit appends run on worker threads.
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from .models import (
    AgentSuggestion,
    Article,
    ArticleStatus,
    AuditLogEntry,
    Category,
    Reply,
    Ticket,
    TicketStatus,
    TriageConfig,
    utcnow,
)


logger = logging.getLogger(__name__)


class TicketNotFound(Exception):
    """Raised when a ticket id does not resolve to a ticket."""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Ticket '{ticket_id}' not found")


class SuggestionNotFound(Exception):
    """Raised when a suggestion id does not resolve to a suggestion."""

    def __init__(self, suggestion_id: str):
        self.suggestion_id = suggestion_id
        super().__init__(f"Suggestion '{suggestion_id}' not found")


# ========== Store Interfaces ==========

class TicketStore(ABC):
    """Ticket persistence."""

    @abstractmethod
    def get(self, ticket_id: str) -> Optional[Ticket]:
        """Return a copy of the ticket or None."""

    @abstractmethod
    def create(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket."""

    @abstractmethod
    def update(self, ticket_id: str, fields: dict[str, Any]) -> Ticket:
        """Apply field updates, raising TicketNotFound if missing."""

    @abstractmethod
    def append_reply(self, ticket_id: str, reply: Reply) -> Ticket:
        """Append a reply to the ticket conversation."""

    @abstractmethod
    def find_by_status(self, status: TicketStatus) -> list[Ticket]:
        """List tickets in the given status, oldest first."""


class ArticleStore(ABC):
    """Knowledge-base article persistence and search."""

    @abstractmethod
    def add(self, article: Article) -> Article:
        """Persist an article."""

    @abstractmethod
    def search(
        self,
        query: str,
        category: Optional[Category] = None,
        limit: int = 10,
    ) -> list[Article]:
        """Indexed full-text search over published articles."""

    @abstractmethod
    def scan(
        self,
        terms: list[str],
        category: Optional[Category] = None,
        limit: int = 10,
    ) -> list[Article]:
        """Case-insensitive substring match over title, body and tags."""

    @abstractmethod
    def recent(self, category: Optional[Category] = None, limit: int = 10) -> list[Article]:
        """Most recently updated published articles."""

    @abstractmethod
    def get_by_ids(self, ids: list[str]) -> list[Article]:
        """Fetch articles by id, preserving the order of ``ids``."""


class SuggestionStore(ABC):
    """Agent suggestion persistence."""

    @abstractmethod
    def create(self, suggestion: AgentSuggestion) -> AgentSuggestion:
        """Persist a new suggestion."""

    @abstractmethod
    def get(self, suggestion_id: str) -> Optional[AgentSuggestion]:
        """Fetch a suggestion by id."""

    @abstractmethod
    def update(self, suggestion_id: str, fields: dict[str, Any]) -> AgentSuggestion:
        """Apply review fields to a suggestion."""

    @abstractmethod
    def delete(self, suggestion_id: str) -> None:
        """Remove a suggestion. Only used to compensate a failed commit."""

    @abstractmethod
    def list_for_ticket(self, ticket_id: str) -> list[AgentSuggestion]:
        """Suggestions for a ticket, oldest first."""

    @abstractmethod
    def list_all(self) -> list[AgentSuggestion]:
        """Every stored suggestion, oldest first."""


class ConfigStore(ABC):
    """Single-document triage policy store."""

    @abstractmethod
    def get_or_default(self) -> TriageConfig:
        """Return the stored policy, creating the default one if absent."""

    @abstractmethod
    def update(self, fields: dict[str, Any]) -> TriageConfig:
        """Merge field updates into the stored policy."""

    @abstractmethod
    def reset(self) -> TriageConfig:
        """Replace the stored policy with defaults."""


class AuditSink(ABC):
    """Append-only audit log."""

    @abstractmethod
    def append(self, entry: AuditLogEntry) -> None:
        """Append an entry."""

    @abstractmethod
    def list_for_ticket(self, ticket_id: str) -> list[AuditLogEntry]:
        """Entries for a ticket in timestamp order."""

    @abstractmethod
    def list_for_trace(self, trace_id: str) -> list[AuditLogEntry]:
        """Entries for one triage invocation in timestamp order."""

    @abstractmethod
    def list_all(self) -> list[AuditLogEntry]:
        """Every entry, grouped by ticket and in timestamp order."""


# ========== In-memory Implementations ==========

class InMemoryTicketStore(TicketStore):
    """Dictionary-backed ticket store handing out copies."""

    def __init__(self):
        self._tickets: dict[str, Ticket] = {}
        self._lock = threading.Lock()

    def get(self, ticket_id: str) -> Optional[Ticket]:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            return ticket.model_copy(deep=True) if ticket else None

    def create(self, ticket: Ticket) -> Ticket:
        with self._lock:
            self._tickets[ticket.id] = ticket.model_copy(deep=True)
        logger.debug(f"Created ticket {ticket.id}")
        return ticket

    def update(self, ticket_id: str, fields: dict[str, Any]) -> Ticket:
        with self._lock:
            current = self._tickets.get(ticket_id)
            if current is None:
                raise TicketNotFound(ticket_id)
            data = current.model_dump()
            data.update(fields)
            data["updated_at"] = utcnow()
            updated = Ticket.model_validate(data)
            self._tickets[ticket_id] = updated
            return updated.model_copy(deep=True)

    def append_reply(self, ticket_id: str, reply: Reply) -> Ticket:
        with self._lock:
            current = self._tickets.get(ticket_id)
            if current is None:
                raise TicketNotFound(ticket_id)
            current.replies.append(reply)
            current.updated_at = utcnow()
            return current.model_copy(deep=True)

    def find_by_status(self, status: TicketStatus) -> list[Ticket]:
        with self._lock:
            matches = [t for t in self._tickets.values() if t.status == status]
        matches.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in matches]


_TOKEN_RE = re.compile(r"\w+")


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


class InMemoryArticleStore(ArticleStore):
    """
    Article store with a small inverted index.

    ``search`` ranks published articles by how many query-term occurrences
    the index holds for them (title, body and tags), which stands in for a
    database text-score. ``scan`` is the unindexed substring fallback.
    """

    def __init__(self):
        self._articles: dict[str, Article] = {}
        self._index: dict[str, dict[str, int]] = {}
        self._lock = threading.Lock()

    def add(self, article: Article) -> Article:
        with self._lock:
            if article.id in self._articles:
                self._unindex(article.id)
            self._articles[article.id] = article
            for token in _tokenize(" ".join([article.title, article.body, *article.tags])):
                postings = self._index.setdefault(token, {})
                postings[article.id] = postings.get(article.id, 0) + 1
        return article

    def _unindex(self, article_id: str) -> None:
        for postings in self._index.values():
            postings.pop(article_id, None)

    def _eligible(self, article: Article, category: Optional[Category]) -> bool:
        if article.status != ArticleStatus.PUBLISHED:
            return False
        return category is None or article.category == category

    def search(
        self,
        query: str,
        category: Optional[Category] = None,
        limit: int = 10,
    ) -> list[Article]:
        terms = set(_tokenize(query))
        scores: dict[str, int] = {}
        with self._lock:
            for term in terms:
                for article_id, count in self._index.get(term, {}).items():
                    scores[article_id] = scores.get(article_id, 0) + count
            candidates = [
                self._articles[article_id]
                for article_id in scores
                if self._eligible(self._articles[article_id], category)
            ]
        candidates.sort(key=lambda a: scores[a.id], reverse=True)
        return candidates[:limit]

    def scan(
        self,
        terms: list[str],
        category: Optional[Category] = None,
        limit: int = 10,
    ) -> list[Article]:
        needles = [t.lower() for t in terms if t]
        if not needles:
            return []
        with self._lock:
            articles = list(self._articles.values())
        matches = []
        for article in articles:
            if not self._eligible(article, category):
                continue
            haystacks = [article.title.lower(), article.body.lower(), *article.tags]
            if any(needle in hay for needle in needles for hay in haystacks):
                matches.append(article)
        matches.sort(key=lambda a: a.updated_at, reverse=True)
        return matches[:limit]

    def recent(self, category: Optional[Category] = None, limit: int = 10) -> list[Article]:
        with self._lock:
            articles = [a for a in self._articles.values() if self._eligible(a, category)]
        articles.sort(key=lambda a: a.updated_at, reverse=True)
        return articles[:limit]

    def get_by_ids(self, ids: list[str]) -> list[Article]:
        with self._lock:
            return [self._articles[i] for i in ids if i in self._articles]


class InMemorySuggestionStore(SuggestionStore):
    """Insertion-ordered suggestion store."""

    def __init__(self):
        self._suggestions: dict[str, AgentSuggestion] = {}
        self._lock = threading.Lock()

    def create(self, suggestion: AgentSuggestion) -> AgentSuggestion:
        with self._lock:
            self._suggestions[suggestion.id] = suggestion
        return suggestion

    def get(self, suggestion_id: str) -> Optional[AgentSuggestion]:
        with self._lock:
            return self._suggestions.get(suggestion_id)

    def update(self, suggestion_id: str, fields: dict[str, Any]) -> AgentSuggestion:
        with self._lock:
            current = self._suggestions.get(suggestion_id)
            if current is None:
                raise SuggestionNotFound(suggestion_id)
            updated = current.model_copy(update=fields)
            # model_copy skips validation
            updated = AgentSuggestion.model_validate(updated.model_dump())
            self._suggestions[suggestion_id] = updated
            return updated

    def delete(self, suggestion_id: str) -> None:
        with self._lock:
            self._suggestions.pop(suggestion_id, None)

    def list_for_ticket(self, ticket_id: str) -> list[AgentSuggestion]:
        with self._lock:
            return [s for s in self._suggestions.values() if s.ticket_id == ticket_id]

    def list_all(self) -> list[AgentSuggestion]:
        with self._lock:
            return list(self._suggestions.values())


class InMemoryConfigStore(ConfigStore):
    """Holds at most one TriageConfig document."""

    def __init__(self, initial: Optional[TriageConfig] = None):
        self._config = initial
        self._lock = threading.Lock()

    def get_or_default(self) -> TriageConfig:
        with self._lock:
            if self._config is None:
                self._config = TriageConfig()
                logger.info("No triage config stored, created defaults")
            return self._config

    def update(self, fields: dict[str, Any]) -> TriageConfig:
        with self._lock:
            base = self._config or TriageConfig()
            data = base.model_dump()
            data.update(fields)
            self._config = TriageConfig.model_validate(data)
            return self._config

    def reset(self) -> TriageConfig:
        with self._lock:
            self._config = TriageConfig()
            return self._config


class InMemoryAuditSink(AuditSink):
    """List-backed audit log. Entries are never modified or removed."""

    def __init__(self):
        self._entries: list[AuditLogEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def list_for_ticket(self, ticket_id: str) -> list[AuditLogEntry]:
        with self._lock:
            entries = [e for e in self._entries if e.ticket_id == ticket_id]
        return sorted(entries, key=lambda e: e.timestamp)

    def list_for_trace(self, trace_id: str) -> list[AuditLogEntry]:
        with self._lock:
            entries = [e for e in self._entries if e.trace_id == trace_id]
        return sorted(entries, key=lambda e: e.timestamp)

    def list_all(self) -> list[AuditLogEntry]:
        with self._lock:
            return sorted(self._entries, key=lambda e: (e.ticket_id, e.timestamp))
