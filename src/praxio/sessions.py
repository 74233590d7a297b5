"""Session continuity across delegations.

State machine per session id::

    Absent --first use--> Active --idle timeout--> Expired
                          Active --close()-------> Closed
                          Active --delegation----> Active

Expired and closed ids stay behind as tombstones so that a later delegation
naming them fails with SessionExpired instead of silently starting over.

Each provider gets its own context slice under a session: the provider's
resume id and an isolated working directory (the CLIs key their stored
conversations by cwd). Continuing a session on another provider starts that
provider's slice empty.
"""

from __future__ import annotations

import asyncio
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from praxio.errors import SessionExpired, SessionNotFound

logger = structlog.get_logger()


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


@dataclass
class ProviderContext:
    """One provider's slice of a session."""

    provider: str
    workdir: Path
    resume_id: str | None = None
    turns: int = 0
    task_ids: list[str] = field(default_factory=list)

    def advance(self, task_id: str, resume_id: str | None) -> None:
        if resume_id:
            self.resume_id = resume_id
        self.turns += 1
        self.task_ids.append(task_id)


@dataclass
class Session:
    session_id: str
    workdir: Path
    last_used: float
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state: SessionState = SessionState.ACTIVE
    contexts: dict[str, ProviderContext] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def context_for(self, provider: str) -> ProviderContext:
        context = self.contexts.get(provider)
        if context is None:
            context = ProviderContext(provider=provider, workdir=self.workdir / provider)
            self.contexts[provider] = context
        return context

    def peek_context(self, provider: str) -> ProviderContext:
        """The provider's slice, or a detached empty one if it has none yet."""
        context = self.contexts.get(provider)
        if context is None:
            return ProviderContext(provider=provider, workdir=self.workdir / provider)
        return context

    def to_dict(self, now: float) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "idle_seconds": round(max(0.0, now - self.last_used), 1),
            "providers": {
                name: {"turns": ctx.turns, "resumable": ctx.resume_id is not None}
                for name, ctx in self.contexts.items()
            },
        }


class SessionManager:
    """Owns every session of this process.

    Retired sessions are dropped and only their id and final state are kept,
    so a long-running server holds live sessions plus one small tombstone per
    retired id. Workdir removal runs in a worker thread.
    """

    def __init__(
        self,
        work_root: Path,
        idle_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._work_root = work_root
        self._idle_seconds = idle_seconds
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._tombstones: dict[str, SessionState] = {}
        self._cleanups: set[asyncio.Task[None]] = set()

    def get(self, session_id: str) -> Session:
        """A live session. Raises SessionExpired for retired ids."""
        session = self._sessions.get(session_id)
        if session is not None and not self._expire_if_idle(session):
            return session
        if session_id in self._tombstones:
            raise SessionExpired(session_id, self._tombstones[session_id].value)
        raise SessionNotFound(session_id)

    def state(self, session_id: str) -> SessionState:
        session = self._sessions.get(session_id)
        if session is not None:
            self._expire_if_idle(session)
            return session.state
        if session_id in self._tombstones:
            return self._tombstones[session_id]
        raise SessionNotFound(session_id)

    @asynccontextmanager
    async def lease(self, session_id: str | None = None) -> AsyncIterator[Session]:
        """Hold ``session_id`` exclusively for one delegation.

        ``None`` opens a fresh session with a generated id; an id never seen
        before opens a session under that id. Raises SessionExpired for
        expired or closed ids, including ones closed while waiting here.
        """
        session = self._open(session_id)
        async with session.lock:
            self._ensure_active(session)
            try:
                yield session
            finally:
                session.last_used = self._clock()

    async def close(self, session_id: str) -> SessionState:
        """Close a session. Waits for an in-flight delegation on it to finish.

        Closing an id that is already retired returns its final state.
        """
        session = self._sessions.get(session_id)
        if session is None:
            if session_id in self._tombstones:
                return self._tombstones[session_id]
            raise SessionNotFound(session_id)
        async with session.lock:
            if session.state is SessionState.ACTIVE:
                self._retire(session, SessionState.CLOSED, cleanup=False)
        await asyncio.to_thread(shutil.rmtree, session.workdir, ignore_errors=True)
        return session.state

    def sweep(self) -> list[str]:
        """Expire idle sessions. Returns the ids expired by this call."""
        expired = []
        for session in list(self._sessions.values()):
            if self._expire_if_idle(session):
                expired.append(session.session_id)
        return expired

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            if session.state is SessionState.ACTIVE:
                await self.close(session.session_id)
        if self._cleanups:
            await asyncio.gather(*self._cleanups, return_exceptions=True)

    def describe(self, include_terminated: bool = False) -> list[dict[str, Any]]:
        now = self._clock()
        described = [s.to_dict(now) for s in self._sessions.values()]
        if include_terminated:
            described.extend(
                {"session_id": sid, "state": state.value}
                for sid, state in self._tombstones.items()
            )
        return described

    def active_count(self) -> int:
        return len(self._sessions)

    def _open(self, session_id: str | None) -> Session:
        if session_id is None:
            session_id = str(uuid.uuid4())
        if session_id in self._tombstones:
            raise SessionExpired(session_id, self._tombstones[session_id].value)
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(
                session_id=session_id,
                workdir=self._work_root / f"session-{uuid.uuid4().hex}",
                last_used=self._clock(),
            )
            self._sessions[session_id] = session
            logger.info("session_created", session_id=session_id)
            return session
        self._expire_if_idle(session)
        self._ensure_active(session)
        return session

    def _ensure_active(self, session: Session) -> None:
        if session.state is not SessionState.ACTIVE:
            raise SessionExpired(session.session_id, session.state.value)

    def _expire_if_idle(self, session: Session) -> bool:
        if session.state is not SessionState.ACTIVE or session.lock.locked():
            return False
        if self._clock() - session.last_used <= self._idle_seconds:
            return False
        self._retire(session, SessionState.EXPIRED)
        return True

    def _retire(self, session: Session, state: SessionState, cleanup: bool = True) -> None:
        session.state = state
        self._sessions.pop(session.session_id, None)
        self._tombstones[session.session_id] = state
        if cleanup:
            task = asyncio.create_task(
                asyncio.to_thread(shutil.rmtree, session.workdir, ignore_errors=True)
            )
            self._cleanups.add(task)
            task.add_done_callback(self._cleanups.discard)
        logger.info(
            "session_retired",
            session_id=session.session_id,
            state=state.value,
            providers=sorted(session.contexts),
        )
