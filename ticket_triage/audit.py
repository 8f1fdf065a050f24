"""
Audit recorder for triage events.

Writes are fire-and-forget: ``record`` builds the entry, stamps it and hands
the append to a worker thread when an event loop is running. A failing sink
is logged and ignored, never retried and never raised to the pipeline.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .models import AuditAction, AuditActor, AuditLogEntry, utcnow
from .stores import AuditSink


logger = logging.getLogger(__name__)


class AuditRecorder:
    """
    Best-effort writer in front of an AuditSink.

    Timestamps are strictly increasing per recorder so that sorting a
    ticket's entries by timestamp reproduces the order they were recorded
    in, even when appends land out of order.
    """

    def __init__(
        self,
        sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sink = sink
        self._clock = clock
        self._last: Optional[datetime] = None
        self._clock_lock = threading.Lock()
        self._pending: set[asyncio.Future] = set()

    @property
    def sink(self) -> AuditSink:
        return self._sink

    def _next_timestamp(self) -> datetime:
        with self._clock_lock:
            now = self._clock()
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
            return now

    def record(
        self,
        ticket_id: str,
        trace_id: str,
        action: AuditAction,
        meta: Optional[dict[str, Any]] = None,
        actor: AuditActor = AuditActor.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        """
        Record an audit entry without blocking the caller.

        Returns:
            The entry that was handed to the sink, or None if it could not
            even be built.
        """
        try:
            entry = AuditLogEntry(
                ticket_id=ticket_id,
                trace_id=trace_id,
                actor=actor,
                actor_id=actor_id,
                action=action,
                meta=meta or {},
                timestamp=self._next_timestamp(),
            )
        except Exception as e:
            logger.error(f"Could not build audit entry {action} for ticket {ticket_id}: {e}")
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(entry)
            return entry

        future = loop.run_in_executor(None, self._write, entry)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        return entry

    def _write(self, entry: AuditLogEntry) -> None:
        try:
            self._sink.append(entry)
        except Exception as e:
            logger.error(
                f"Audit write failed for ticket {entry.ticket_id} "
                f"(trace {entry.trace_id}, action {entry.action.value}): {e}"
            )

    async def flush(self) -> None:
        """Wait for appends already handed to worker threads."""
        loop = asyncio.get_running_loop()
        stale = {f for f in self._pending if f.get_loop() is not loop}
        self._pending -= stale
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
