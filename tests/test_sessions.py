"""Tests for session lifecycle and per-session serialization."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from praxio.errors import SessionExpired, SessionNotFound
from praxio.sessions import SessionManager, SessionState


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def manager(work_root: Path, clock: Clock) -> SessionManager:
    return SessionManager(work_root=work_root, idle_seconds=60.0, clock=clock)


@pytest.mark.asyncio
async def test_lease_without_id_creates_session(manager: SessionManager):
    async with manager.lease() as session:
        assert session.state is SessionState.ACTIVE
        assert session.session_id
    assert manager.get(session.session_id) is session
    assert manager.active_count() == 1


@pytest.mark.asyncio
async def test_unknown_id_is_created_and_reused(manager: SessionManager):
    async with manager.lease("s1") as first:
        pass
    async with manager.lease("s1") as second:
        pass
    assert first is second
    assert manager.active_count() == 1


def test_get_unknown_session(manager: SessionManager):
    with pytest.raises(SessionNotFound):
        manager.get("missing")


@pytest.mark.asyncio
async def test_provider_contexts_are_isolated(manager: SessionManager):
    async with manager.lease("s1") as session:
        session.context_for("claude").advance("t1", "claude-resume")
        gemini = session.peek_context("gemini")
    assert gemini.resume_id is None
    assert gemini.turns == 0
    assert "gemini" not in session.contexts
    claude = session.context_for("claude")
    assert claude.resume_id == "claude-resume"
    assert claude.task_ids == ["t1"]
    assert claude.workdir != gemini.workdir
    assert claude.workdir.parent == session.workdir


@pytest.mark.asyncio
async def test_idle_session_expires(manager: SessionManager, clock: Clock):
    async with manager.lease("s1"):
        pass
    clock.now = 61.0
    with pytest.raises(SessionExpired) as exc_info:
        async with manager.lease("s1"):
            pass
    assert exc_info.value.session_id == "s1"
    assert manager.state("s1") is SessionState.EXPIRED
    with pytest.raises(SessionExpired):
        manager.get("s1")


@pytest.mark.asyncio
async def test_use_within_idle_window_extends_it(manager: SessionManager, clock: Clock):
    async with manager.lease("s1"):
        pass
    clock.now = 50.0
    async with manager.lease("s1"):
        pass
    clock.now = 100.0
    async with manager.lease("s1") as session:
        assert session.state is SessionState.ACTIVE


@pytest.mark.asyncio
async def test_sweep_expires_idle_sessions(manager: SessionManager, clock: Clock):
    async with manager.lease("old"):
        pass
    clock.now = 30.0
    async with manager.lease("new"):
        pass
    clock.now = 70.0
    assert manager.sweep() == ["old"]
    assert manager.active_count() == 1
    assert manager.sweep() == []


@pytest.mark.asyncio
async def test_sweep_skips_session_in_use(manager: SessionManager, clock: Clock):
    async with manager.lease("busy"):
        clock.now = 1000.0
        assert manager.sweep() == []
    assert manager.get("busy").state is SessionState.ACTIVE


@pytest.mark.asyncio
async def test_close_then_reuse_fails(manager: SessionManager, work_root: Path):
    async with manager.lease("s1") as session:
        session.context_for("claude").workdir.mkdir(parents=True)
    assert await manager.close("s1") is SessionState.CLOSED
    assert not session.workdir.exists()
    with pytest.raises(SessionExpired) as exc_info:
        async with manager.lease("s1"):
            pass
    assert exc_info.value.state == "closed"


@pytest.mark.asyncio
async def test_close_unknown(manager: SessionManager):
    with pytest.raises(SessionNotFound):
        await manager.close("nope")


@pytest.mark.asyncio
async def test_same_session_leases_serialize(manager: SessionManager):
    active = 0
    peak = 0
    order: list[int] = []

    async def use(i: int) -> None:
        nonlocal active, peak
        async with manager.lease("shared"):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            order.append(i)
            active -= 1

    await asyncio.gather(*(use(i) for i in range(5)))
    assert peak == 1
    assert sorted(order) == list(range(5))


@pytest.mark.asyncio
async def test_different_sessions_run_concurrently(manager: SessionManager):
    both_inside = asyncio.Event()
    inside = 0

    async def use(session_id: str) -> None:
        nonlocal inside
        async with manager.lease(session_id):
            inside += 1
            if inside == 2:
                both_inside.set()
            await asyncio.wait_for(both_inside.wait(), timeout=1.0)

    await asyncio.gather(use("a"), use("b"))


@pytest.mark.asyncio
async def test_close_waits_for_lease(manager: SessionManager):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def hold() -> None:
        async with manager.lease("s1"):
            entered.set()
            await release.wait()

    holder = asyncio.create_task(hold())
    await entered.wait()
    closer = asyncio.create_task(manager.close("s1"))
    await asyncio.sleep(0.01)
    assert not closer.done()
    assert manager.get("s1").state is SessionState.ACTIVE

    release.set()
    await holder
    assert await closer is SessionState.CLOSED


@pytest.mark.asyncio
async def test_describe(manager: SessionManager):
    async with manager.lease("a") as session:
        session.context_for("claude").advance("t1", "r1")
    async with manager.lease("b"):
        pass
    await manager.close("b")
    listed = manager.describe()
    assert [s["session_id"] for s in listed] == ["a"]
    assert listed[0]["providers"] == {"claude": {"turns": 1, "resumable": True}}
    assert len(manager.describe(include_terminated=True)) == 2


@pytest.mark.asyncio
async def test_close_all(manager: SessionManager):
    for sid in ("a", "b"):
        async with manager.lease(sid):
            pass
    await manager.close_all()
    assert manager.active_count() == 0


@pytest.mark.asyncio
async def test_retired_sessions_leave_only_a_tombstone(manager: SessionManager, clock: Clock):
    async with manager.lease("old") as old:
        old.context_for("claude").workdir.mkdir(parents=True)
    async with manager.lease("closed"):
        pass
    await manager.close("closed")
    clock.now = 61.0
    assert manager.sweep() == ["old"]
    await manager.close_all()

    assert manager._sessions == {}
    assert manager._tombstones == {
        "old": SessionState.EXPIRED,
        "closed": SessionState.CLOSED,
    }
    assert not old.workdir.exists()
    assert await manager.close("old") is SessionState.EXPIRED
    assert manager.describe(include_terminated=True) == [
        {"session_id": "closed", "state": "closed"},
        {"session_id": "old", "state": "expired"},
    ]
