"""
Triage orchestrator.

Runs one triage invocation end to end:

1. Load the ticket and snapshot the triage policy
2. Classify (fatal on failure or timeout)
3. Retrieve knowledge-base articles (degrades to no articles)
4. Draft a reply (fatal on failure or timeout)
5. Decide auto-close vs. handoff (fails safe to handoff)
6. Commit the suggestion and the ticket state change together

Every completed step leaves an audit entry under the invocation's trace id;
an aborted run leaves a single TRIAGE_FAILED entry on top of those.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

from .audit import AuditRecorder
from .classifier import Classifier
from .config import PipelineConfig
from .decision import DecisionPolicy
from .drafter import ReplyDrafter
from .knowledge_base import KnowledgeRetriever
from .models import (
    AgentSuggestion,
    Article,
    AuditAction,
    Classification,
    Decision,
    DraftResult,
    Reply,
    Ticket,
    TicketStatus,
    TriageConfig,
    TriageResult,
)
from .stores import ConfigStore, SuggestionStore, TicketNotFound, TicketStore
from .tickets import InvalidTransition, transition_fields


logger = logging.getLogger(__name__)


class TriageError(Exception):
    """A fatal triage failure, reported to whoever invoked the triage."""

    def __init__(self, message: str, ticket_id: str, trace_id: str, stage: str):
        self.ticket_id = ticket_id
        self.trace_id = trace_id
        self.stage = stage
        super().__init__(message)


class PersistenceError(TriageError):
    """The commit phase failed; earlier writes of this run were rolled back."""


class TicketChanged(TriageError):
    """The ticket was modified by someone else while the run was in flight."""


class TicketLeases:
    """
    Per-ticket mutual exclusion for triage runs.

    Holders of the same ticket id queue up on one ``asyncio.Lock``; the lock
    is dropped once nobody holds or waits for it. Must be used from a single
    event loop.
    """

    def __init__(self):
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, ticket_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(ticket_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[ticket_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[ticket_id]
            if users <= 1:
                del self._locks[ticket_id]
            else:
                self._locks[ticket_id] = (lock, users - 1)

    def is_held(self, ticket_id: str) -> bool:
        entry = self._locks.get(ticket_id)
        return entry is not None and entry[0].locked()


class TriageOrchestrator:
    """
    Sequences classification, retrieval, drafting and the decision for one
    ticket, then persists the outcome.

    Args:
        tickets: Ticket store.
        suggestions: Suggestion store.
        configs: Triage policy store, read once per invocation.
        classifier: Any ``Classifier`` implementation.
        retriever: Knowledge retriever.
        drafter: Any ``ReplyDrafter`` implementation.
        audit: Best-effort audit recorder.
        policy: Decision policy.
        settings: Timeouts and limits.
        leases: Shared lease registry; one is created when omitted.
    """

    def __init__(
        self,
        tickets: TicketStore,
        suggestions: SuggestionStore,
        configs: ConfigStore,
        classifier: Classifier,
        retriever: KnowledgeRetriever,
        drafter: ReplyDrafter,
        audit: AuditRecorder,
        policy: Optional[DecisionPolicy] = None,
        settings: Optional[PipelineConfig] = None,
        leases: Optional[TicketLeases] = None,
    ):
        self._tickets = tickets
        self._suggestions = suggestions
        self._configs = configs
        self._classifier = classifier
        self._retriever = retriever
        self._drafter = drafter
        self._audit = audit
        self._policy = policy or DecisionPolicy()
        self._settings = settings or PipelineConfig()
        self._leases = leases or TicketLeases()

    @property
    def leases(self) -> TicketLeases:
        return self._leases

    async def triage(self, ticket_id: str) -> TriageResult:
        """
        Triage a ticket.

        Every call gets a fresh trace id and creates a new suggestion, even
        when the ticket was triaged before. Calls for the same ticket run one
        at a time.

        Raises:
            TicketNotFound: If the ticket does not exist.
            TriageError: On any other fatal failure.
        """
        trace_id = uuid4().hex

        async with self._leases.hold(ticket_id):
            logger.info(f"Starting triage for ticket {ticket_id} (trace {trace_id})")
            try:
                result = await self._run(ticket_id, trace_id)
            except TicketNotFound as e:
                self._record_failure(ticket_id, trace_id, "load", e)
                raise
            except TriageError as e:
                self._record_failure(ticket_id, trace_id, e.stage, e)
                raise
            except asyncio.CancelledError:
                logger.warning(f"Triage for ticket {ticket_id} abandoned (trace {trace_id})")
                self._record_failure(ticket_id, trace_id, "cancelled", None)
                raise

        logger.info(
            f"Triage completed for ticket {ticket_id} (trace {trace_id}): "
            f"{'auto-closed' if result.decision.auto_closed else 'handed off'}"
        )
        return result

    def triage_sync(self, ticket_id: str) -> TriageResult:
        """Blocking entry point for manual re-triage outside an event loop."""
        return asyncio.run(self.triage(ticket_id))

    async def _run(self, ticket_id: str, trace_id: str) -> TriageResult:
        ticket = self._load(ticket_id, trace_id)
        config = self._snapshot_config(ticket_id, trace_id)

        classification = await self._classify(ticket, trace_id)
        articles = await self._retrieve(ticket, classification, trace_id)
        draft = await self._draft(ticket, articles, trace_id)
        decision = self._decide(ticket, classification, config, trace_id)

        # No awaits from here on: a cancelled run never reaches a partial commit
        suggestion = self._commit(ticket, trace_id, classification, articles, draft, decision)

        return TriageResult(
            ticket_id=ticket.id,
            trace_id=trace_id,
            classification=classification,
            retrieved_articles=articles,
            draft=draft,
            decision=decision,
            suggestion_id=suggestion.id,
        )

    def _load(self, ticket_id: str, trace_id: str) -> Ticket:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)

        try:
            transition_fields(ticket.status, TicketStatus.TRIAGED)
        except InvalidTransition as e:
            raise TriageError(
                f"Ticket {ticket_id} cannot be triaged: {e}", ticket_id, trace_id, "load"
            ) from e

        return ticket

    def _snapshot_config(self, ticket_id: str, trace_id: str) -> Optional[TriageConfig]:
        try:
            return self._configs.get_or_default()
        except Exception as e:
            # The decision policy fails safe on a missing snapshot
            logger.error(f"Could not read triage config for ticket {ticket_id} (trace {trace_id}): {e}")
            return None

    async def _call(self, func, *args, timeout: float):
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)

    async def _classify(self, ticket: Ticket, trace_id: str) -> Classification:
        timeout = self._settings.classify_timeout
        try:
            classification = await self._call(
                self._classifier.classify, ticket.classification_text(), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise TriageError(
                f"Classification timed out after {timeout}s", ticket.id, trace_id, "classify"
            ) from e
        except Exception as e:
            raise TriageError(
                f"Failed to classify ticket: {e}", ticket.id, trace_id, "classify"
            ) from e

        self._audit.record(ticket.id, trace_id, AuditAction.AGENT_CLASSIFIED, {
            "predicted_category": classification.predicted_category.value,
            "confidence": classification.confidence,
            "original_category": ticket.category.value,
            "model_info": classification.model_info.model_dump(),
        })
        return classification

    async def _retrieve(
        self,
        ticket: Ticket,
        classification: Classification,
        trace_id: str,
    ) -> list[Article]:
        timeout = self._settings.retrieve_timeout
        category = classification.predicted_category
        error: Optional[str] = None

        try:
            articles = await self._call(
                self._retriever.find_relevant_articles,
                ticket.search_text(),
                category,
                self._settings.retrieval_limit,
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = f"Knowledge base retrieval timed out after {timeout}s"
            articles = []
        except Exception as e:
            error = f"Knowledge base retrieval failed: {e}"
            articles = []

        if error:
            logger.warning(
                f"{error}; continuing without articles for ticket {ticket.id} (trace {trace_id})"
            )

        meta: dict[str, Any] = {
            "articles_found": len(articles),
            "article_ids": [a.id for a in articles],
            "search_category": category.value,
            "top_relevance_score": articles[0].relevance_score if articles else 0,
        }
        if error:
            meta["degraded"] = True
            meta["error"] = error
        self._audit.record(ticket.id, trace_id, AuditAction.KB_RETRIEVED, meta)

        return articles

    async def _draft(self, ticket: Ticket, articles: list[Article], trace_id: str) -> DraftResult:
        timeout = self._settings.draft_timeout
        try:
            draft = await self._call(
                self._drafter.draft, ticket.classification_text(), articles, timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise TriageError(
                f"Draft generation timed out after {timeout}s", ticket.id, trace_id, "draft"
            ) from e
        except Exception as e:
            raise TriageError(
                f"Failed to generate draft reply: {e}", ticket.id, trace_id, "draft"
            ) from e

        max_length = self._settings.draft_max_length
        if len(draft.draft_reply) > max_length:
            logger.debug(f"Truncating draft for ticket {ticket.id} to {max_length} characters")
            draft = draft.model_copy(update={"draft_reply": draft.draft_reply[:max_length]})

        self._audit.record(ticket.id, trace_id, AuditAction.DRAFT_GENERATED, {
            "draft_length": len(draft.draft_reply),
            "citations_count": len(draft.citations),
            "model_info": draft.model_info.model_dump(),
        })
        return draft

    def _decide(
        self,
        ticket: Ticket,
        classification: Classification,
        config: Optional[TriageConfig],
        trace_id: str,
    ) -> Decision:
        decision = self._policy.decide(classification.confidence, config)
        self._audit.record(ticket.id, trace_id, AuditAction.DECISION_MADE, decision.model_dump())
        return decision

    def _commit(
        self,
        ticket: Ticket,
        trace_id: str,
        classification: Classification,
        articles: list[Article],
        draft: DraftResult,
        decision: Decision,
    ) -> AgentSuggestion:
        """
        Persist the suggestion and the ticket change as one logical unit.

        Phase one creates the suggestion; phase two moves the ticket. When
        phase two fails the ticket fields are written back and the
        suggestion is deleted before ``PersistenceError`` is raised. A ticket
        touched by anyone else since the load is left alone (``TicketChanged``).
        """
        # Re-read with no await before the writes: human actions may have
        # landed while the collaborators ran
        try:
            current = self._tickets.get(ticket.id)
        except Exception as e:
            raise PersistenceError(
                f"Failed to reload ticket before commit: {e}", ticket.id, trace_id, "persist"
            ) from e
        if current is None:
            raise PersistenceError(
                f"Ticket {ticket.id} was removed during triage", ticket.id, trace_id, "persist"
            )
        if current.status != ticket.status or current.updated_at != ticket.updated_at:
            raise TicketChanged(
                f"Ticket {ticket.id} changed during triage "
                f"(status {ticket.status.value} -> {current.status.value}), result discarded",
                ticket.id,
                trace_id,
                "persist",
            )

        snapshot = {
            "category": current.category,
            "status": current.status,
            "suggestion_ref": current.suggestion_ref,
            "replies": list(current.replies),
            "resolved_at": current.resolved_at,
        }

        model_info = classification.model_info.model_copy(update={
            "latency_ms": classification.model_info.latency_ms + draft.model_info.latency_ms,
        })
        try:
            suggestion = self._suggestions.create(AgentSuggestion(
                ticket_id=ticket.id,
                trace_id=trace_id,
                predicted_category=classification.predicted_category,
                article_ids=[a.id for a in articles],
                draft_reply=draft.draft_reply,
                confidence=classification.confidence,
                auto_closed=decision.auto_closed,
                model_info=model_info,
            ))
        except Exception as e:
            raise PersistenceError(
                f"Failed to save agent suggestion: {e}", ticket.id, trace_id, "persist"
            ) from e

        try:
            fields = transition_fields(current.status, TicketStatus.TRIAGED)
            fields["category"] = classification.predicted_category
            fields["suggestion_ref"] = suggestion.id
            self._tickets.update(ticket.id, fields)

            if decision.auto_closed:
                self._tickets.append_reply(
                    ticket.id,
                    Reply(author=None, content=suggestion.draft_reply, is_internal=False),
                )
                self._tickets.update(
                    ticket.id, transition_fields(TicketStatus.TRIAGED, TicketStatus.RESOLVED)
                )
            else:
                self._tickets.update(
                    ticket.id, transition_fields(TicketStatus.TRIAGED, TicketStatus.WAITING_HUMAN)
                )
        except Exception as e:
            self._compensate(ticket.id, trace_id, snapshot, suggestion.id)
            raise PersistenceError(
                f"Failed to apply triage result to ticket: {e}", ticket.id, trace_id, "persist"
            ) from e

        if decision.auto_closed:
            self._audit.record(ticket.id, trace_id, AuditAction.AUTO_CLOSED, {
                "suggestion_id": suggestion.id,
                "confidence": suggestion.confidence,
                "reply_length": len(suggestion.draft_reply),
            })
            logger.info(f"Auto-closed ticket {ticket.id} with confidence {suggestion.confidence}")
        else:
            self._audit.record(ticket.id, trace_id, AuditAction.ASSIGNED_TO_HUMAN, {
                "suggestion_id": suggestion.id,
                "reason": decision.reasoning,
            })
            logger.info(f"Assigned ticket {ticket.id} to human review")

        return suggestion

    def _compensate(
        self,
        ticket_id: str,
        trace_id: str,
        snapshot: dict[str, Any],
        suggestion_id: str,
    ) -> None:
        try:
            self._tickets.update(ticket_id, snapshot)
        except Exception as e:
            logger.critical(
                f"Could not restore ticket {ticket_id} after failed commit (trace {trace_id}): {e}"
            )
        try:
            self._suggestions.delete(suggestion_id)
        except Exception as e:
            logger.critical(
                f"Could not remove suggestion {suggestion_id} after failed commit (trace {trace_id}): {e}"
            )

    def _record_failure(
        self,
        ticket_id: str,
        trace_id: str,
        stage: str,
        error: Optional[BaseException],
    ) -> None:
        cause = error.__cause__ if error is not None and error.__cause__ else error
        meta = {
            "stage": stage,
            "error": str(error) if error is not None else "Triage cancelled",
            "error_type": type(cause).__name__ if cause is not None else "CancelledError",
        }
        logger.error(f"Triage failed for ticket {ticket_id} (trace {trace_id}) at {stage}: {meta['error']}")
        self._audit.record(ticket_id, trace_id, AuditAction.TRIAGE_FAILED, meta)
