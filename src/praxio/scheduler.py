"""Concurrent delegation scheduler.

A fixed pool of workers pulls tasks from one FIFO queue, so admission into
the concurrency window follows submission order while completion order is
whatever the providers make it. Every delegation runs in its own asyncio
task; a failure, timeout or cancellation in one never reaches its siblings.

Tasks on the same session are serialized before they enter the queue, so a
follow-up waiting on a busy session never occupies a worker.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from praxio.errors import InvalidRequest, PraxioError, ProviderError
from praxio.fallback import FallbackCoordinator
from praxio.models import ANY_PROVIDER, DelegationOutcome, Failure, Task
from praxio.sessions import SessionManager
from praxio.usage import UsageTracker

logger = structlog.get_logger()

_MAX_SESSION_ID_LENGTH = 256


@dataclass
class _Gate:
    """Admission gate for one session id: at most one of its tasks is queued or running."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class _Ticket:
    task: Task
    future: asyncio.Future[DelegationOutcome]
    gate: _Gate | None = None


class DelegationScheduler:
    def __init__(
        self,
        sessions: SessionManager,
        coordinator: FallbackCoordinator,
        usage: UsageTracker,
        max_in_flight: int = 4,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self._sessions = sessions
        self._coordinator = coordinator
        self._usage = usage
        self._max_in_flight = max_in_flight
        self._queue: asyncio.Queue[_Ticket] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._gates: dict[str, _Gate] = {}
        self._in_flight = 0

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"praxio_worker_{i}")
            for i in range(self._max_in_flight)
        ]
        logger.info("scheduler_started", max_in_flight=self._max_in_flight)

    async def shutdown(self) -> None:
        """Stop the workers. Queued and running delegations are cancelled."""
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        while not self._queue.empty():
            ticket = self._queue.get_nowait()
            ticket.future.cancel()
            self._leave(ticket)
            self._queue.task_done()
        logger.info("scheduler_stopped")

    async def submit(self, task: Task) -> DelegationOutcome:
        """Run one task and wait for its outcome.

        Invalid tasks are answered immediately without touching a session or
        spawning anything. A task naming a session waits here, outside the
        concurrency window, until earlier tasks on that session have finished.
        Cancelling the caller cancels this delegation only.
        """
        try:
            self.validate(task)
        except InvalidRequest as exc:
            outcome = _failure_outcome(task, exc, session_id=None)
            self._usage.record(outcome)
            logger.info("delegation_rejected", task_id=task.task_id, error=exc.message)
            return outcome

        if not self._workers:
            await self.start()
        gate = await self._enter(task.session_id) if task.session_id is not None else None
        future: asyncio.Future[DelegationOutcome] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Ticket(task=task, future=future, gate=gate))
        logger.debug("delegation_queued", task_id=task.task_id, queued=self._queue.qsize())
        return await future

    async def submit_batch(self, tasks: Sequence[Task]) -> dict[str, DelegationOutcome]:
        """Run tasks concurrently; returns ``task_id -> outcome`` in submission order."""
        ids = [t.task_id for t in tasks]
        if len(set(ids)) != len(ids):
            raise InvalidRequest("task ids in a batch must be unique")
        if not self._workers:
            await self.start()
        outcomes = await asyncio.gather(*(self.submit(t) for t in tasks))
        return dict(zip(ids, outcomes, strict=True))

    def validate(self, task: Task) -> None:
        if not task.prompt or not task.prompt.strip():
            raise InvalidRequest("prompt must not be empty")
        if task.timeout_seconds is not None and task.timeout_seconds <= 0:
            raise InvalidRequest("timeout_seconds must be positive")
        if task.provider == ANY_PROVIDER and not task.allow_fallback:
            raise InvalidRequest("a task for 'any' provider cannot be pinned")
        if task.session_id is not None and not (
            0 < len(task.session_id) <= _MAX_SESSION_ID_LENGTH
        ):
            raise InvalidRequest(
                f"session_id must be 1-{_MAX_SESSION_ID_LENGTH} characters"
            )
        self._coordinator.plan(task)

    async def _worker(self, index: int) -> None:
        while True:
            ticket = await self._queue.get()
            try:
                if ticket.future.done():
                    # Caller gave up while the task was queued
                    continue
                delegation = asyncio.create_task(
                    self._execute(ticket.task), name=f"praxio_delegation_{ticket.task.task_id}"
                )
                ticket.future.add_done_callback(
                    lambda f, d=delegation: d.cancel() if f.cancelled() else None
                )
                try:
                    await asyncio.wait({delegation})
                except asyncio.CancelledError:
                    delegation.cancel()
                    ticket.future.cancel()
                    raise
                if delegation.cancelled():
                    logger.info("delegation_cancelled", task_id=ticket.task.task_id, worker=index)
                    continue
                if not ticket.future.done():
                    ticket.future.set_result(delegation.result())
            finally:
                self._leave(ticket)
                self._queue.task_done()

    async def _enter(self, session_id: str) -> _Gate:
        gate = self._gates.setdefault(session_id, _Gate())
        gate.users += 1
        try:
            await gate.lock.acquire()
        except BaseException:
            self._release_gate(session_id, gate, held=False)
            raise
        return gate

    def _leave(self, ticket: _Ticket) -> None:
        gate, ticket.gate = ticket.gate, None
        if gate is not None and ticket.task.session_id is not None:
            self._release_gate(ticket.task.session_id, gate, held=True)

    def _release_gate(self, session_id: str, gate: _Gate, held: bool) -> None:
        if held:
            gate.lock.release()
        gate.users -= 1
        if gate.users == 0 and self._gates.get(session_id) is gate:
            del self._gates[session_id]

    async def _execute(self, task: Task) -> DelegationOutcome:
        start = time.monotonic()
        self._in_flight += 1
        session_id = task.session_id
        try:
            async with self._sessions.lease(task.session_id) as session:
                session_id = session.session_id
                outcome = await self._coordinator.delegate(task, session)
                if outcome.success and outcome.response is not None:
                    session.context_for(outcome.provider_used).advance(
                        task.task_id, outcome.response.resume_id
                    )
        except PraxioError as exc:
            outcome = _failure_outcome(task, exc, session_id, start)
        except Exception as exc:
            logger.exception("delegation_crashed", task_id=task.task_id)
            outcome = _failure_outcome(
                task, ProviderError(f"unexpected {type(exc).__name__}: {exc}"), session_id, start
            )
        finally:
            self._in_flight -= 1

        self._usage.record(outcome)
        logger.info(
            "delegation_completed",
            task_id=task.task_id,
            success=outcome.success,
            provider_requested=task.provider,
            provider_used=outcome.provider_used,
            session_id=outcome.session_id,
            elapsed_ms=outcome.elapsed_ms,
            tokens_in=outcome.usage.input,
            tokens_out=outcome.usage.output,
            kind=outcome.failure.kind.value if outcome.failure else None,
        )
        return outcome


def _failure_outcome(
    task: Task,
    error: PraxioError,
    session_id: str | None,
    start: float | None = None,
) -> DelegationOutcome:
    return DelegationOutcome(
        task_id=task.task_id,
        success=False,
        provider_requested=task.provider,
        session_id=session_id,
        elapsed_ms=int((time.monotonic() - start) * 1000) if start is not None else 0,
        failure=Failure(
            kind=error.kind,
            message=str(error),
            providers=(error.provider,) if error.provider else (),
        ),
    )
