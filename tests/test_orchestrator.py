"""
Tests for the triage orchestrator.

Tests cover:
- The happy path for handoff and auto-close
- Audit ordering per trace
- Degraded retrieval and fatal classify/draft failures
- Commit compensation and cancellation
- Per-ticket serialization
"""

import asyncio
import threading
import time

import pytest

from ticket_triage.classifier import ClassificationError, Classifier, KeywordClassifier
from ticket_triage.drafter import DraftError, LOOKING_INTO_IT, ReplyDrafter
from ticket_triage.models import (
    AuditAction,
    Category,
    Classification,
    Ticket,
    TicketStatus,
)
from ticket_triage.orchestrator import PersistenceError, TicketChanged, TicketLeases, TriageError
from ticket_triage.stores import (
    InMemoryArticleStore,
    InMemoryConfigStore,
    InMemoryTicketStore,
    TicketNotFound,
)
from ticket_triage.tickets import TicketDesk


# =============================================================================
# Fakes
# =============================================================================

class FailingClassifier(Classifier):
    def classify(self, text: str) -> Classification:
        raise ClassificationError("model unavailable")


class SlowClassifier(Classifier):
    """Keyword classifier that sleeps and tracks how many calls overlap."""

    def __init__(self, delay: float):
        self._delay = delay
        self._inner = KeywordClassifier()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def classify(self, text: str) -> Classification:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self._delay)
            return self._inner.classify(text)
        finally:
            with self._lock:
                self.active -= 1


class GatedClassifier(Classifier):
    """Keyword classifier that blocks until ``release`` is set."""

    def __init__(self):
        self._inner = KeywordClassifier()
        self.entered = threading.Event()
        self.release = threading.Event()

    def classify(self, text: str) -> Classification:
        self.entered.set()
        self.release.wait(timeout=5)
        return self._inner.classify(text)


class FixedClassifier(Classifier):
    def __init__(self, category: Category, confidence: float):
        self._result = Classification(predicted_category=category, confidence=confidence)

    def classify(self, text: str) -> Classification:
        return self._result


class FailingDrafter(ReplyDrafter):
    def draft(self, text, articles):
        raise DraftError("drafting backend down")


class BrokenSearchStore(InMemoryArticleStore):
    def search(self, query, category=None, limit=10):
        raise ConnectionError("search index offline")


class FailingConfigStore(InMemoryConfigStore):
    def get_or_default(self):
        raise RuntimeError("config collection unreachable")


class FailingStatusTicketStore(InMemoryTicketStore):
    """Rejects updates that move a ticket into ``fail_status``."""

    def __init__(self, fail_status: TicketStatus):
        super().__init__()
        self._fail_status = fail_status

    def update(self, ticket_id, fields):
        if fields.get("status") == self._fail_status:
            raise IOError("write conflict")
        return super().update(ticket_id, fields)


class FailingReplyTicketStore(InMemoryTicketStore):
    def append_reply(self, ticket_id, reply):
        raise IOError("reply collection unavailable")


def actions(entries) -> list[AuditAction]:
    return [entry.action for entry in entries]


# =============================================================================
# Happy Path Tests
# =============================================================================

class TestTriageHandoff:
    """Default policy with a confidence below the threshold."""

    @pytest.mark.asyncio
    async def test_billing_ticket_classified_as_billing(self, make_orchestrator, billing_ticket):
        orchestrator = make_orchestrator()

        result = await orchestrator.triage(billing_ticket.id)

        assert result.classification.predicted_category == Category.BILLING
        assert result.classification.confidence == 0.7
        assert result.decision.auto_closed is False
        assert result.decision.threshold == 0.78

    @pytest.mark.asyncio
    async def test_ticket_waits_for_human(self, make_orchestrator, billing_ticket, ticket_store):
        orchestrator = make_orchestrator()

        result = await orchestrator.triage(billing_ticket.id)

        ticket = ticket_store.get(billing_ticket.id)
        assert ticket.status == TicketStatus.WAITING_HUMAN
        assert ticket.category == Category.BILLING
        assert ticket.suggestion_ref == result.suggestion_id
        assert ticket.replies == []
        assert ticket.resolved_at is None

    @pytest.mark.asyncio
    async def test_suggestion_persisted(self, make_orchestrator, billing_ticket, suggestion_store):
        orchestrator = make_orchestrator()

        result = await orchestrator.triage(billing_ticket.id)

        suggestion = suggestion_store.get(result.suggestion_id)
        assert suggestion.ticket_id == billing_ticket.id
        assert suggestion.trace_id == result.trace_id
        assert suggestion.predicted_category == Category.BILLING
        assert suggestion.article_ids == ["kb-refund"]
        assert suggestion.draft_reply == result.draft.draft_reply
        assert suggestion.auto_closed is False
        assert suggestion.approved is False

    @pytest.mark.asyncio
    async def test_draft_cites_retrieved_articles(self, make_orchestrator, billing_ticket):
        orchestrator = make_orchestrator()

        result = await orchestrator.triage(billing_ticket.id)

        assert [a.id for a in result.retrieved_articles] == ["kb-refund"]
        assert result.draft.citations == ["kb-refund"]
        assert "Refunds for duplicate charges" in result.draft.draft_reply
        assert result.draft.draft_reply.startswith("Thank you for contacting us regarding your billing concern.")

    @pytest.mark.asyncio
    async def test_audit_trail_order(self, make_orchestrator, billing_ticket, audit, audit_sink):
        orchestrator = make_orchestrator()

        result = await orchestrator.triage(billing_ticket.id)
        await audit.flush()

        entries = audit_sink.list_for_trace(result.trace_id)
        assert actions(entries) == [
            AuditAction.AGENT_CLASSIFIED,
            AuditAction.KB_RETRIEVED,
            AuditAction.DRAFT_GENERATED,
            AuditAction.DECISION_MADE,
            AuditAction.ASSIGNED_TO_HUMAN,
        ]
        assert all(e.ticket_id == billing_ticket.id for e in entries)
        assert entries[0].meta["predicted_category"] == "billing"
        assert entries[0].meta["original_category"] == "other"
        assert entries[1].meta["articles_found"] == 1
        assert "degraded" not in entries[1].meta


class TestTriageAutoClose:
    """Policies that let the ticket close automatically."""

    @pytest.mark.asyncio
    async def test_auto_close_resolves_ticket(
        self, make_orchestrator, billing_ticket, ticket_store, config_store
    ):
        config_store.update({"confidence_threshold": 0.6})
        orchestrator = make_orchestrator()

        result = await orchestrator.triage(billing_ticket.id)

        ticket = ticket_store.get(billing_ticket.id)
        assert result.decision.auto_closed is True
        assert ticket.status == TicketStatus.RESOLVED
        assert ticket.resolved_at is not None
        assert len(ticket.replies) == 1
        assert ticket.replies[0].author is None
        assert ticket.replies[0].is_internal is False
        assert ticket.replies[0].content == result.draft.draft_reply

    @pytest.mark.asyncio
    async def test_auto_close_audit(self, make_orchestrator, billing_ticket, config_store, audit, audit_sink):
        config_store.update({"confidence_threshold": 0.6})
        orchestrator = make_orchestrator()

        result = await orchestrator.triage(billing_ticket.id)
        await audit.flush()

        entries = audit_sink.list_for_trace(result.trace_id)
        assert actions(entries)[-1] == AuditAction.AUTO_CLOSED
        assert AuditAction.ASSIGNED_TO_HUMAN not in actions(entries)

    @pytest.mark.asyncio
    async def test_confidence_equal_to_threshold_auto_closes(self, make_orchestrator, billing_ticket, config_store):
        config_store.update({"confidence_threshold": 0.7})
        orchestrator = make_orchestrator()

        result = await orchestrator.triage(billing_ticket.id)

        assert result.decision.auto_closed is True

    @pytest.mark.asyncio
    async def test_auto_close_disabled(self, make_orchestrator, billing_ticket, ticket_store, config_store):
        config_store.update({"auto_close_enabled": False, "confidence_threshold": 0.0})
        orchestrator = make_orchestrator(classifier=FixedClassifier(Category.BILLING, 1.0))

        result = await orchestrator.triage(billing_ticket.id)

        ticket = ticket_store.get(billing_ticket.id)
        assert result.decision.auto_closed is False
        assert ticket.status == TicketStatus.WAITING_HUMAN
        assert ticket.resolved_at is None


class TestReTriage:
    """Repeated triage of the same ticket."""

    @pytest.mark.asyncio
    async def test_double_triage_creates_two_suggestions(
        self, make_orchestrator, billing_ticket, suggestion_store, ticket_store
    ):
        orchestrator = make_orchestrator()

        first = await orchestrator.triage(billing_ticket.id)
        second = await orchestrator.triage(billing_ticket.id)

        assert first.trace_id != second.trace_id
        assert first.suggestion_id != second.suggestion_id
        assert len(suggestion_store.list_for_ticket(billing_ticket.id)) == 2
        assert ticket_store.get(billing_ticket.id).suggestion_ref == second.suggestion_id

    @pytest.mark.asyncio
    async def test_resolved_ticket_can_be_retriaged(
        self, make_orchestrator, billing_ticket, ticket_store, config_store
    ):
        config_store.update({"confidence_threshold": 0.6})
        orchestrator = make_orchestrator()
        await orchestrator.triage(billing_ticket.id)

        config_store.reset()
        result = await orchestrator.triage(billing_ticket.id)

        ticket = ticket_store.get(billing_ticket.id)
        assert result.decision.auto_closed is False
        assert ticket.status == TicketStatus.WAITING_HUMAN
        assert ticket.resolved_at is None

    def test_triage_sync(self, make_orchestrator, billing_ticket, suggestion_store):
        orchestrator = make_orchestrator()

        result = orchestrator.triage_sync(billing_ticket.id)

        assert suggestion_store.get(result.suggestion_id) is not None


# =============================================================================
# Degradation and Failure Tests
# =============================================================================

class TestRetrievalDegradation:
    """Retrieval problems never abort a triage."""

    @pytest.mark.asyncio
    async def test_empty_corpus_uses_fallback_sentence(self, make_orchestrator, billing_ticket):
        orchestrator = make_orchestrator(articles=InMemoryArticleStore())

        result = await orchestrator.triage(billing_ticket.id)

        assert result.retrieved_articles == []
        assert result.draft.citations == []
        assert LOOKING_INTO_IT.strip() in result.draft.draft_reply

    @pytest.mark.asyncio
    async def test_search_failure_degrades(self, make_orchestrator, billing_ticket, audit, audit_sink):
        orchestrator = make_orchestrator(articles=BrokenSearchStore())

        result = await orchestrator.triage(billing_ticket.id)
        await audit.flush()

        assert result.retrieved_articles == []
        retrieved = [
            e for e in audit_sink.list_for_trace(result.trace_id)
            if e.action == AuditAction.KB_RETRIEVED
        ]
        assert len(retrieved) == 1
        assert retrieved[0].meta["degraded"] is True
        assert retrieved[0].meta["articles_found"] == 0

    @pytest.mark.asyncio
    async def test_config_read_failure_hands_off(self, make_orchestrator, billing_ticket, ticket_store):
        orchestrator = make_orchestrator(
            configs=FailingConfigStore(),
            classifier=FixedClassifier(Category.BILLING, 1.0),
        )

        result = await orchestrator.triage(billing_ticket.id)

        assert result.decision.auto_closed is False
        assert result.decision.error is not None
        assert ticket_store.get(billing_ticket.id).status == TicketStatus.WAITING_HUMAN


class TestFatalFailures:
    """Failures that abort the triage."""

    @pytest.mark.asyncio
    async def test_unknown_ticket(self, make_orchestrator, audit, audit_sink):
        orchestrator = make_orchestrator()

        with pytest.raises(TicketNotFound):
            await orchestrator.triage("missing")
        await audit.flush()

        entries = audit_sink.list_for_ticket("missing")
        assert actions(entries) == [AuditAction.TRIAGE_FAILED]
        assert entries[0].meta["stage"] == "load"

    @pytest.mark.asyncio
    async def test_closed_ticket_cannot_be_triaged(self, make_orchestrator, ticket_store):
        ticket = ticket_store.create(Ticket(
            title="Old issue",
            description="Already done",
            status=TicketStatus.CLOSED,
        ))
        orchestrator = make_orchestrator()

        with pytest.raises(TriageError) as exc_info:
            await orchestrator.triage(ticket.id)

        assert exc_info.value.stage == "load"

    @pytest.mark.asyncio
    async def test_classification_failure(
        self, make_orchestrator, billing_ticket, ticket_store, suggestion_store, audit, audit_sink
    ):
        orchestrator = make_orchestrator(classifier=FailingClassifier())

        with pytest.raises(TriageError) as exc_info:
            await orchestrator.triage(billing_ticket.id)
        await audit.flush()

        error = exc_info.value
        assert error.stage == "classify"
        assert error.ticket_id == billing_ticket.id
        assert isinstance(error.__cause__, ClassificationError)
        assert ticket_store.get(billing_ticket.id).status == TicketStatus.OPEN
        assert suggestion_store.list_all() == []

        entries = audit_sink.list_for_trace(error.trace_id)
        assert actions(entries) == [AuditAction.TRIAGE_FAILED]
        assert entries[0].meta["error_type"] == "ClassificationError"

    @pytest.mark.asyncio
    async def test_classification_timeout(self, make_orchestrator, billing_ticket, pipeline_config):
        from dataclasses import replace

        settings = replace(pipeline_config, classify_timeout=0.05)
        orchestrator = make_orchestrator(classifier=SlowClassifier(0.5), settings=settings)

        with pytest.raises(TriageError) as exc_info:
            await orchestrator.triage(billing_ticket.id)

        assert exc_info.value.stage == "classify"
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_draft_failure_keeps_earlier_audit(
        self, make_orchestrator, billing_ticket, suggestion_store, audit, audit_sink
    ):
        orchestrator = make_orchestrator(drafter=FailingDrafter())

        with pytest.raises(TriageError) as exc_info:
            await orchestrator.triage(billing_ticket.id)
        await audit.flush()

        assert exc_info.value.stage == "draft"
        assert suggestion_store.list_all() == []
        assert actions(audit_sink.list_for_trace(exc_info.value.trace_id)) == [
            AuditAction.AGENT_CLASSIFIED,
            AuditAction.KB_RETRIEVED,
            AuditAction.TRIAGE_FAILED,
        ]


class TestCommitCompensation:
    """A failed ticket update rolls the whole commit back."""

    @pytest.mark.asyncio
    async def test_handoff_write_failure_rolls_back(self, make_orchestrator, suggestion_store, audit, audit_sink):
        tickets = FailingStatusTicketStore(TicketStatus.WAITING_HUMAN)
        ticket = tickets.create(Ticket(title="Duplicate charge", description="Please refund the charge"))
        orchestrator = make_orchestrator(tickets=tickets)

        with pytest.raises(PersistenceError) as exc_info:
            await orchestrator.triage(ticket.id)
        await audit.flush()

        restored = tickets.get(ticket.id)
        assert restored.status == TicketStatus.OPEN
        assert restored.category == Category.OTHER
        assert restored.suggestion_ref is None
        assert suggestion_store.list_all() == []
        assert exc_info.value.stage == "persist"
        assert actions(audit_sink.list_for_trace(exc_info.value.trace_id))[-1] == AuditAction.TRIAGE_FAILED

    @pytest.mark.asyncio
    async def test_auto_close_reply_failure_rolls_back(self, make_orchestrator, suggestion_store, config_store):
        config_store.update({"confidence_threshold": 0.0})
        tickets = FailingReplyTicketStore()
        ticket = tickets.create(Ticket(title="Duplicate charge", description="Please refund the charge"))
        orchestrator = make_orchestrator(tickets=tickets)

        with pytest.raises(PersistenceError):
            await orchestrator.triage(ticket.id)

        restored = tickets.get(ticket.id)
        assert restored.status == TicketStatus.OPEN
        assert restored.replies == []
        assert restored.resolved_at is None
        assert suggestion_store.list_all() == []


# =============================================================================
# Concurrency Tests
# =============================================================================

class TestConcurrency:
    """Leases and cancellation."""

    @pytest.mark.asyncio
    async def test_same_ticket_runs_serialize(self, make_orchestrator, billing_ticket, suggestion_store, ticket_store):
        classifier = SlowClassifier(0.05)
        orchestrator = make_orchestrator(classifier=classifier)

        first, second = await asyncio.gather(
            orchestrator.triage(billing_ticket.id),
            orchestrator.triage(billing_ticket.id),
        )

        assert classifier.max_active == 1
        assert len(suggestion_store.list_for_ticket(billing_ticket.id)) == 2
        assert ticket_store.get(billing_ticket.id).suggestion_ref in {
            first.suggestion_id, second.suggestion_id
        }
        assert not orchestrator.leases.is_held(billing_ticket.id)

    @pytest.mark.asyncio
    async def test_different_tickets_run_in_parallel(self, make_orchestrator, ticket_store):
        classifier = SlowClassifier(0.2)
        orchestrator = make_orchestrator(classifier=classifier)
        one = ticket_store.create(Ticket(title="Refund", description="Refund my charge"))
        two = ticket_store.create(Ticket(title="Login", description="Login error"))

        await asyncio.gather(orchestrator.triage(one.id), orchestrator.triage(two.id))

        assert classifier.max_active == 2

    @pytest.mark.asyncio
    async def test_ticket_closed_during_triage_stays_closed(
        self, make_orchestrator, ticket_store, suggestion_store, audit, audit_sink
    ):
        ticket = ticket_store.create(Ticket(
            title="Duplicate charge",
            description="Please refund the charge",
            status=TicketStatus.WAITING_HUMAN,
        ))
        classifier = GatedClassifier()
        orchestrator = make_orchestrator(classifier=classifier)
        desk = TicketDesk(ticket_store, suggestion_store, audit)

        task = asyncio.create_task(orchestrator.triage(ticket.id))
        assert await asyncio.to_thread(classifier.entered.wait, 5)
        desk.reply(ticket.id, "agent-1", "Refund issued, closing.", status=TicketStatus.CLOSED)
        classifier.release.set()

        with pytest.raises(TicketChanged) as exc_info:
            await task
        await audit.flush()

        current = ticket_store.get(ticket.id)
        assert current.status == TicketStatus.CLOSED
        assert current.suggestion_ref is None
        assert [r.content for r in current.replies] == ["Refund issued, closing."]
        assert suggestion_store.list_all() == []
        assert exc_info.value.stage == "persist"
        assert actions(audit_sink.list_for_trace(exc_info.value.trace_id))[-1] == AuditAction.TRIAGE_FAILED

    @pytest.mark.asyncio
    async def test_reply_during_triage_is_kept(
        self, make_orchestrator, ticket_store, suggestion_store, audit, config_store
    ):
        """A human reply without a status change still wins over the run."""
        config_store.update({"confidence_threshold": 0.0})
        ticket = ticket_store.create(Ticket(
            title="Duplicate charge",
            description="Please refund the charge",
            status=TicketStatus.WAITING_HUMAN,
        ))
        classifier = GatedClassifier()
        orchestrator = make_orchestrator(classifier=classifier)
        desk = TicketDesk(ticket_store, suggestion_store, audit)

        task = asyncio.create_task(orchestrator.triage(ticket.id))
        assert await asyncio.to_thread(classifier.entered.wait, 5)
        desk.reply(ticket.id, "agent-1", "Looking at this now", is_internal=True)
        classifier.release.set()

        with pytest.raises(TicketChanged):
            await task

        current = ticket_store.get(ticket.id)
        assert current.status == TicketStatus.WAITING_HUMAN
        assert [r.content for r in current.replies] == ["Looking at this now"]
        assert current.resolved_at is None
        assert suggestion_store.list_all() == []

    @pytest.mark.asyncio
    async def test_cancelled_triage_leaves_no_state(
        self, make_orchestrator, billing_ticket, ticket_store, suggestion_store, audit, audit_sink
    ):
        orchestrator = make_orchestrator(classifier=SlowClassifier(0.3))

        task = asyncio.create_task(orchestrator.triage(billing_ticket.id))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await audit.flush()

        assert ticket_store.get(billing_ticket.id).status == TicketStatus.OPEN
        assert suggestion_store.list_all() == []
        entries = audit_sink.list_for_ticket(billing_ticket.id)
        assert actions(entries) == [AuditAction.TRIAGE_FAILED]
        assert entries[0].meta["stage"] == "cancelled"


class TestTicketLeases:
    """Lease registry bookkeeping."""

    @pytest.mark.asyncio
    async def test_lease_released(self):
        leases = TicketLeases()

        async with leases.hold("t1"):
            assert leases.is_held("t1")
            assert not leases.is_held("t2")

        assert not leases.is_held("t1")
        assert leases._locks == {}
