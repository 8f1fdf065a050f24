"""
Ticket lifecycle and the human-side ticket actions.

The state machine below is shared by the triage orchestrator and by the
actions agents take on a ticket (replying, resolving, closing, reviewing a
suggestion). ``TicketDesk`` also hosts the post-creation hook that hands new
tickets to the triage queue.
"""

import logging
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4

from .audit import AuditRecorder
from .models import (
    AgentSuggestion,
    AuditAction,
    AuditActor,
    AuditLogEntry,
    Category,
    Priority,
    Reply,
    Ticket,
    TicketStatus,
    utcnow,
)
from .stores import SuggestionNotFound, SuggestionStore, TicketNotFound, TicketStore

if TYPE_CHECKING:
    from .task_queue import TriageQueue


logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """Raised when a status change is not allowed by the lifecycle."""

    def __init__(self, current: TicketStatus, target: TicketStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move ticket from {current.value} to {target.value}")


ALLOWED_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.OPEN: frozenset({TicketStatus.TRIAGED}),
    # Re-triage goes through ``triaged`` again
    TicketStatus.TRIAGED: frozenset({
        TicketStatus.TRIAGED,
        TicketStatus.RESOLVED,
        TicketStatus.WAITING_HUMAN,
    }),
    TicketStatus.WAITING_HUMAN: frozenset({
        TicketStatus.TRIAGED,
        TicketStatus.RESOLVED,
        TicketStatus.CLOSED,
    }),
    TicketStatus.RESOLVED: frozenset({TicketStatus.TRIAGED, TicketStatus.CLOSED}),
    TicketStatus.CLOSED: frozenset(),
}


def can_transition(current: TicketStatus, target: TicketStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition_fields(current: TicketStatus, target: TicketStatus) -> dict[str, Any]:
    """
    Validate a status change and return the ticket fields it writes.

    Leaving ``resolved`` for another triage clears ``resolved_at``.

    Raises:
        InvalidTransition: If ``target`` is not reachable from ``current``.
    """
    if not can_transition(current, target):
        raise InvalidTransition(current, target)

    fields: dict[str, Any] = {"status": target}
    if current == TicketStatus.RESOLVED and target == TicketStatus.TRIAGED:
        fields["resolved_at"] = None
    if target == TicketStatus.RESOLVED:
        fields["resolved_at"] = utcnow()
    elif target == TicketStatus.CLOSED:
        fields["closed_at"] = utcnow()
    return fields


class TicketDesk:
    """
    Human-facing ticket operations around the triage core.

    Args:
        tickets: Ticket store.
        suggestions: Suggestion store (for reviews).
        audit: Audit recorder.
        queue: Triage queue used by the post-creation hook; tickets are
            created without triage when omitted.
    """

    def __init__(
        self,
        tickets: TicketStore,
        suggestions: SuggestionStore,
        audit: AuditRecorder,
        queue: Optional["TriageQueue"] = None,
    ):
        self._tickets = tickets
        self._suggestions = suggestions
        self._audit = audit
        self._queue = queue

    def _require(self, ticket_id: str) -> Ticket:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    def create_ticket(
        self,
        title: str,
        description: str,
        created_by: Optional[str] = None,
        category: Category = Category.OTHER,
        priority: Priority = Priority.MEDIUM,
    ) -> Ticket:
        """
        Persist a new ticket and schedule its triage.

        Returns immediately; triage runs on the queue's workers.
        """
        ticket = self._tickets.create(Ticket(
            title=title,
            description=description,
            created_by=created_by,
            category=category,
            priority=priority,
        ))

        self._audit.record(
            ticket.id,
            uuid4().hex,
            AuditAction.TICKET_CREATED,
            {"title": ticket.title, "category": ticket.category.value, "status": ticket.status.value},
            actor=AuditActor.USER,
            actor_id=created_by,
        )

        if self._queue is not None:
            self._queue.submit(ticket.id)
        else:
            logger.debug(f"No triage queue configured, ticket {ticket.id} left open")

        logger.info(f"Created ticket {ticket.id}")
        return ticket

    def reply(
        self,
        ticket_id: str,
        author: str,
        content: str,
        is_internal: bool = False,
        status: Optional[TicketStatus] = None,
    ) -> Ticket:
        """
        Add an agent reply and optionally move the ticket to ``status``.

        Raises:
            TicketNotFound: If the ticket does not exist.
            InvalidTransition: If the status change is not allowed.
        """
        ticket = self._require(ticket_id)
        previous = ticket.status

        fields: dict[str, Any] = {}
        if status is not None and status != previous:
            fields = transition_fields(previous, status)

        ticket = self._tickets.append_reply(
            ticket_id,
            Reply(author=author, content=content, is_internal=is_internal),
        )
        if fields:
            ticket = self._tickets.update(ticket_id, fields)

        trace_id = uuid4().hex
        self._audit.record(
            ticket_id,
            trace_id,
            AuditAction.REPLY_SENT,
            {
                "reply_length": len(content),
                "is_internal": is_internal,
                "status_changed": bool(fields),
                "new_status": ticket.status.value,
            },
            actor=AuditActor.AGENT,
            actor_id=author,
        )
        if fields:
            self._audit.record(
                ticket_id,
                trace_id,
                AuditAction.STATUS_CHANGED,
                {"from": previous.value, "to": ticket.status.value},
                actor=AuditActor.AGENT,
                actor_id=author,
            )
            if ticket.status == TicketStatus.RESOLVED:
                self._audit.record(
                    ticket_id,
                    trace_id,
                    AuditAction.TICKET_RESOLVED,
                    {"resolved_by": author},
                    actor=AuditActor.AGENT,
                    actor_id=author,
                )

        return ticket

    def review_suggestion(
        self,
        suggestion_id: str,
        reviewer: str,
        approved: bool = True,
        draft_reply: Optional[str] = None,
    ) -> AgentSuggestion:
        """
        Approve or reject an agent suggestion, optionally editing its draft.

        Raises:
            SuggestionNotFound: If the suggestion does not exist.
        """
        if self._suggestions.get(suggestion_id) is None:
            raise SuggestionNotFound(suggestion_id)

        fields: dict[str, Any] = {
            "approved": approved,
            "approved_by": reviewer,
            "approved_at": utcnow(),
        }
        if draft_reply:
            fields["draft_reply"] = draft_reply

        suggestion = self._suggestions.update(suggestion_id, fields)
        logger.info(
            f"Suggestion {suggestion_id} {'approved' if approved else 'rejected'} by {reviewer}"
        )
        return suggestion

    def audit_trail(self, ticket_id: str) -> list[AuditLogEntry]:
        """Audit entries for a ticket, oldest first."""
        return self._audit.sink.list_for_ticket(ticket_id)
