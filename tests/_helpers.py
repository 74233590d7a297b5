"""Shared test helpers - importable from test modules."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from praxio.config import Settings
from praxio.errors import PraxioError, ProviderTimeout
from praxio.invoker import Invocation, ProcessInvoker
from praxio.models import (
    Availability,
    CostSchedule,
    ProviderResponse,
    ProviderVariant,
    Task,
    TokenUsage,
)
from praxio.providers.base import (
    CAP_LARGE_CONTEXT,
    CAP_SESSION_RESUME,
    CAP_SYSTEM_PROMPT,
    Provider,
)
from praxio.runtime import PraxioRuntime
from praxio.sessions import ProviderContext


@dataclass
class Step:
    """One scripted reaction of a FakeProvider."""

    content: str = "ok"
    tokens_in: int = 10
    tokens_out: int = 5
    resume_id: str | None = None
    cost_usd: float | None = None
    delay: float = 0.0
    error: PraxioError | None = None
    hold: asyncio.Event | None = None


@dataclass
class Call:
    task: Task
    resume_id: str | None
    workdir: Path
    turns: int


@dataclass
class FakeProvider(Provider):
    """Provider whose submit() follows a script instead of spawning a CLI."""

    name: str = "fake"
    variant: ProviderVariant = ProviderVariant.FAST_REASONING
    priority: int = 10
    capabilities: frozenset[str] = frozenset({CAP_SESSION_RESUME, CAP_SYSTEM_PROMPT})
    default_timeout: float = 30.0
    rates: CostSchedule = field(default_factory=CostSchedule)
    availability: Availability = field(default_factory=Availability.available)
    script: list[Step] = field(default_factory=list)
    calls: list[Call] = field(default_factory=list)
    probes: int = 0
    active: int = 0
    max_active: int = 0
    binary: str = "fake"

    def __post_init__(self) -> None:
        self.probe_timeout = 1.0
        self.env_overrides = {}
        self.script = list(self.script)

    def build_invocation(self, task: Task, context: ProviderContext) -> Invocation:
        return Invocation(argv=(self.binary, task.prompt), cwd=context.workdir)

    def parse_output(self, stdout: str) -> ProviderResponse:
        return ProviderResponse(content=stdout, usage=TokenUsage())

    async def probe_availability(self, invoker: ProcessInvoker) -> Availability:
        self.probes += 1
        return self.availability

    async def submit(
        self,
        task: Task,
        context: ProviderContext,
        invoker: ProcessInvoker,
    ) -> ProviderResponse:
        self.calls.append(
            Call(task=task, resume_id=context.resume_id, workdir=context.workdir, turns=context.turns)
        )
        step = self.script.pop(0) if self.script else Step(content=f"{self.name}: {task.prompt}")
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if step.hold is not None:
                await step.hold.wait()
            if step.delay:
                timeout = self.timeout_for(task)
                try:
                    await asyncio.wait_for(asyncio.sleep(step.delay), timeout)
                except TimeoutError:
                    raise ProviderTimeout(self.name, timeout) from None
            if step.error is not None:
                raise step.error
            return ProviderResponse(
                content=step.content,
                usage=TokenUsage(input=step.tokens_in, output=step.tokens_out),
                primary_model=f"{self.name}-model",
                all_models_used=(f"{self.name}-model",),
                cost_usd=step.cost_usd,
                resume_id=step.resume_id,
            )
        finally:
            self.active -= 1


def fast_provider(**kwargs) -> FakeProvider:
    kwargs.setdefault("name", "claude")
    return FakeProvider(**kwargs)


def large_provider(**kwargs) -> FakeProvider:
    kwargs.setdefault("name", "gemini")
    kwargs.setdefault("variant", ProviderVariant.LARGE_CONTEXT)
    kwargs.setdefault("priority", 20)
    kwargs.setdefault(
        "capabilities", frozenset({CAP_SESSION_RESUME, CAP_SYSTEM_PROMPT, CAP_LARGE_CONTEXT})
    )
    kwargs.setdefault("default_timeout", 60.0)
    return FakeProvider(**kwargs)


def make_settings(work_root: Path, **overrides) -> Settings:
    overrides.setdefault("max_concurrent_delegations", 4)
    return Settings(work_root=work_root, _env_file=None, **overrides)


def make_runtime(work_root: Path, *providers: Provider, **overrides) -> PraxioRuntime:
    return PraxioRuntime(make_settings(work_root, **overrides), providers=list(providers))
