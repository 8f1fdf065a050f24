"""
Shared fixtures: in-memory stores, a small knowledge base and an
orchestrator factory wired with the deterministic providers.
"""

import pytest

from ticket_triage.audit import AuditRecorder
from ticket_triage.classifier import KeywordClassifier
from ticket_triage.config import PipelineConfig
from ticket_triage.drafter import TemplateDrafter
from ticket_triage.knowledge_base import KnowledgeRetriever
from ticket_triage.models import Article, ArticleStatus, Category, Ticket
from ticket_triage.orchestrator import TriageOrchestrator
from ticket_triage.stores import (
    InMemoryArticleStore,
    InMemoryAuditSink,
    InMemoryConfigStore,
    InMemorySuggestionStore,
    InMemoryTicketStore,
)


BILLING_TITLE = "Duplicate charge"
BILLING_DESCRIPTION = (
    "I was charged twice for my order, please issue a refund for the duplicate charge"
)


@pytest.fixture
def ticket_store() -> InMemoryTicketStore:
    return InMemoryTicketStore()


@pytest.fixture
def article_store() -> InMemoryArticleStore:
    return InMemoryArticleStore()


@pytest.fixture
def suggestion_store() -> InMemorySuggestionStore:
    return InMemorySuggestionStore()


@pytest.fixture
def config_store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def audit(audit_sink: InMemoryAuditSink) -> AuditRecorder:
    return AuditRecorder(audit_sink)


@pytest.fixture
def kb_articles() -> list[Article]:
    """One published article per category plus a draft that must never match."""
    return [
        Article(
            id="kb-refund",
            title="Refunds for duplicate charges",
            body=(
                "If you were charged twice for the same order, the duplicate charge "
                "is refunded to the original payment method within 5-10 business days."
            ),
            tags=["Billing", "Refund"],
            category=Category.BILLING,
            status=ArticleStatus.PUBLISHED,
        ),
        Article(
            id="kb-500",
            title="Troubleshooting 500 Internal Server Errors",
            body="Refresh the page, clear your browser cache and try again.",
            tags=["technical", "errors"],
            category=Category.TECH,
            status=ArticleStatus.PUBLISHED,
        ),
        Article(
            id="kb-tracking",
            title="Tracking your shipment",
            body="Open My Orders and click Track Package for delivery updates.",
            tags=["shipping", "tracking"],
            category=Category.SHIPPING,
            status=ArticleStatus.PUBLISHED,
        ),
        Article(
            id="kb-refund-draft",
            title="Refund policy (draft)",
            body="Duplicate charge refunds are being reworked.",
            tags=["billing"],
            category=Category.BILLING,
            status=ArticleStatus.DRAFT,
        ),
    ]


@pytest.fixture
def populated_articles(article_store: InMemoryArticleStore, kb_articles: list[Article]) -> InMemoryArticleStore:
    for article in kb_articles:
        article_store.add(article)
    return article_store


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        classify_timeout=2.0,
        retrieve_timeout=2.0,
        draft_timeout=2.0,
        retrieval_limit=5,
        draft_max_length=5000,
        snippet_length=150,
        max_citations=3,
        queue_workers=2,
        queue_max_attempts=3,
    )


@pytest.fixture
def billing_ticket(ticket_store: InMemoryTicketStore) -> Ticket:
    return ticket_store.create(Ticket(
        title=BILLING_TITLE,
        description=BILLING_DESCRIPTION,
        created_by="john@customer.com",
    ))


@pytest.fixture
def make_orchestrator(
    ticket_store,
    populated_articles,
    suggestion_store,
    config_store,
    audit,
    pipeline_config,
):
    """Factory building an orchestrator; any collaborator can be overridden."""

    def _make(**overrides) -> TriageOrchestrator:
        classifier = overrides.pop("classifier", None) or KeywordClassifier()
        articles = overrides.pop("articles", populated_articles)
        settings = overrides.pop("settings", pipeline_config)
        options = {
            "tickets": ticket_store,
            "suggestions": suggestion_store,
            "configs": config_store,
            "classifier": classifier,
            "retriever": KnowledgeRetriever(articles, default_limit=settings.retrieval_limit),
            "drafter": TemplateDrafter(classifier=KeywordClassifier()),
            "audit": audit,
            "settings": settings,
        }
        options.update(overrides)
        return TriageOrchestrator(**options)

    return _make
