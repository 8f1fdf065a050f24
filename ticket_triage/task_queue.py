"""
Background triage queue.

Ticket creation hands the ticket id to ``TriageQueue.submit`` and returns;
worker tasks pick ids up and run the orchestrator with retries. A ticket
stays pending until its triage succeeded or ran out of attempts, so a
submit for a ticket that is already waiting or running is a no-op.
"""

import asyncio
import logging
from typing import Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .models import TicketStatus, TriageResult
from .orchestrator import TicketChanged, TriageError, TriageOrchestrator
from .stores import TicketNotFound, TicketStore


logger = logging.getLogger(__name__)


def is_retryable(error: BaseException) -> bool:
    """False for failures another attempt cannot fix."""
    if isinstance(error, (TicketNotFound, TicketChanged)):
        return False
    if isinstance(error, TriageError) and error.stage == "load":
        return False
    return True


class TriageQueue:
    """
    Explicit asyncio work queue in front of the orchestrator.

    Args:
        orchestrator: Orchestrator that performs each triage.
        workers: Number of concurrent worker tasks.
        max_attempts: Attempts per ticket before it is reported as failed.
        wait: tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        orchestrator: TriageOrchestrator,
        workers: int = 4,
        max_attempts: int = 3,
        wait: Optional[wait_base] = None,
    ):
        self._orchestrator = orchestrator
        self._workers = workers
        self._max_attempts = max_attempts
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=2, max=10)

        self._queue: Optional[asyncio.Queue] = None
        self._backlog: list[str] = []
        self._pending: set[str] = set()
        self._tasks: list[asyncio.Task] = []

        self.results: dict[str, TriageResult] = {}
        self.failures: dict[str, BaseException] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    def submit(self, ticket_id: str) -> bool:
        """
        Schedule triage for a ticket.

        Safe to call before ``start``; ids submitted early are enqueued when
        the workers start. Must otherwise be called from the queue's loop.

        Returns:
            True if the ticket was enqueued, False if it was already pending.
        """
        if ticket_id in self._pending:
            logger.debug(f"Ticket {ticket_id} already pending triage, not enqueued again")
            return False

        self._pending.add(ticket_id)
        self.failures.pop(ticket_id, None)

        if self._queue is None:
            self._backlog.append(ticket_id)
        else:
            self._queue.put_nowait(ticket_id)

        logger.debug(f"Submitted ticket {ticket_id} for triage")
        return True

    def requeue_untriaged(self, tickets: TicketStore) -> int:
        """
        Re-submit every ticket still ``open``, e.g. after a restart.

        Returns:
            Number of tickets newly enqueued.
        """
        count = 0
        for ticket in tickets.find_by_status(TicketStatus.OPEN):
            if self.submit(ticket.id):
                count += 1

        if count:
            logger.info(f"Requeued {count} untriaged tickets")
        return count

    async def start(self) -> None:
        """Start the worker tasks on the running loop."""
        if self._tasks:
            return

        self._queue = asyncio.Queue()
        for ticket_id in self._backlog:
            self._queue.put_nowait(ticket_id)
        self._backlog.clear()

        self._tasks = [
            asyncio.create_task(self._worker(), name=f"triage-worker-{n}")
            for n in range(self._workers)
        ]
        logger.info(f"Started triage queue with {self._workers} workers")

    async def join(self) -> None:
        """Wait until every submitted ticket has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """
        Stop the workers.

        With ``drain`` the queue is emptied first; otherwise only the triage
        runs already in flight are awaited and waiting ids stay pending.
        """
        if not self._tasks:
            return

        if not drain:
            while not self._queue.empty():
                self._backlog.append(self._queue.get_nowait())
                self._queue.task_done()

        # Leaves only idle workers blocked on the queue
        await self.join()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks = []
        self._queue = None
        logger.info("Stopped triage queue")

    async def _worker(self) -> None:
        while True:
            ticket_id = await self._queue.get()
            try:
                await self._process(ticket_id)
            finally:
                self._queue.task_done()

    async def _process(self, ticket_id: str) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=self._wait,
                retry=retry_if_exception(is_retryable),
                reraise=True,
                before_sleep=lambda retry_state: logger.warning(
                    f"Retrying triage of ticket {ticket_id} after error: "
                    f"{retry_state.outcome.exception()}"
                ),
            ):
                with attempt:
                    result = await self._orchestrator.triage(ticket_id)
        except TicketNotFound as e:
            logger.warning(f"Dropping triage job: {e}")
            self.failures[ticket_id] = e
        except Exception as e:
            logger.error(f"Triage of ticket {ticket_id} failed permanently: {e}")
            self.failures[ticket_id] = e
        else:
            self.results[ticket_id] = result
        finally:
            self._pending.discard(ticket_id)
