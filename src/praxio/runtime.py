"""Runtime - wires the delegation core together for the MCP server or library use.

Holds the process-wide state (provider registry, sessions, usage ledger) with
an explicit lifecycle: ``start()`` probes providers and launches the workers
and the idle-session reaper, ``close()`` tears all of it down.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from types import TracebackType
from typing import Any

import structlog

from praxio.config import Settings
from praxio.fallback import FallbackCoordinator
from praxio.invoker import ProcessInvoker
from praxio.models import DelegationOutcome, Task
from praxio.providers import ClaudeProvider, GeminiProvider, Provider, ProviderRegistry
from praxio.scheduler import DelegationScheduler
from praxio.sessions import SessionManager
from praxio.usage import UsageSnapshot, UsageTracker

logger = structlog.get_logger()


def build_providers(settings: Settings) -> list[Provider]:
    """The provider set, fast-reasoning first."""
    return [
        ClaudeProvider(
            binary=settings.claude_binary,
            default_timeout=settings.fast_timeout_seconds,
            rates=settings.claude_rates,
            probe_timeout=settings.probe_timeout_seconds,
        ),
        GeminiProvider(
            binary=settings.gemini_binary,
            default_timeout=settings.large_context_timeout_seconds,
            rates=settings.gemini_rates,
            probe_timeout=settings.probe_timeout_seconds,
        ),
    ]


class PraxioRuntime:
    def __init__(
        self,
        settings: Settings | None = None,
        providers: Sequence[Provider] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self.invoker = ProcessInvoker(kill_grace_seconds=self.settings.kill_grace_seconds)
        self.registry = ProviderRegistry(
            providers if providers is not None else build_providers(self.settings),
            self.invoker,
            reprobe_after_failures=self.settings.reprobe_after_failures,
            probe_ttl_seconds=self.settings.probe_ttl_seconds,
            clock=clock,
        )
        self.sessions = SessionManager(
            work_root=self.settings.work_root,
            idle_seconds=self.settings.session_idle_seconds,
            clock=clock,
        )
        self.usage = UsageTracker()
        self.coordinator = FallbackCoordinator(self.registry, self.invoker)
        self.scheduler = DelegationScheduler(
            self.sessions,
            self.coordinator,
            self.usage,
            max_in_flight=self.settings.max_concurrent_delegations,
        )
        self._reaper: asyncio.Task[None] | None = None

    async def start(self, probe: bool = True) -> None:
        if probe:
            results = await self.registry.probe_all()
            logger.info(
                "providers_probed",
                **{name: a.state.value for name, a in results.items()},
            )
        await self.scheduler.start()
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap(), name="praxio_session_reaper")

    async def close(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.gather(self._reaper, return_exceptions=True)
            self._reaper = None
        await self.scheduler.shutdown()
        await self.sessions.close_all()

    async def __aenter__(self) -> PraxioRuntime:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def delegate(self, task: Task) -> DelegationOutcome:
        return await self.scheduler.submit(task)

    async def delegate_batch(self, tasks: Sequence[Task]) -> dict[str, DelegationOutcome]:
        return await self.scheduler.submit_batch(tasks)

    async def close_session(self, session_id: str) -> dict[str, Any]:
        state = await self.sessions.close(session_id)
        return {
            "session_id": session_id,
            "state": state.value,
            "usage": self.usage.session(session_id).to_dict(),
        }

    def usage_snapshot(self) -> UsageSnapshot:
        return self.usage.snapshot()

    async def provider_status(self, reprobe: bool = False) -> list[dict[str, Any]]:
        if reprobe:
            await self.registry.probe_all()
        return [d.to_dict() for d in self.registry.descriptors()]

    def status(self) -> dict[str, Any]:
        return {
            "providers": [d.to_dict() for d in self.registry.descriptors()],
            "active_sessions": self.sessions.active_count(),
            "in_flight": self.scheduler.in_flight,
            "queued": self.scheduler.queued,
            "max_in_flight": self.scheduler.max_in_flight,
            "running": self.scheduler.running,
        }

    async def _reap(self) -> None:
        interval = self.settings.session_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            expired = self.sessions.sweep()
            if expired:
                logger.info("sessions_expired", count=len(expired), session_ids=expired)
