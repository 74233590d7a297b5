"""Process-wide provider state: descriptors, availability probing, candidate order."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from praxio.errors import FailureKind, InvalidRequest
from praxio.invoker import ProcessInvoker
from praxio.models import (
    ANY_PROVIDER,
    Availability,
    AvailabilityState,
    CostSchedule,
    ProviderVariant,
    Task,
)
from praxio.providers.base import Provider

logger = structlog.get_logger()


@dataclass
class ProviderDescriptor:
    """Runtime view of one provider. Availability changes only through probing."""

    name: str
    variant: ProviderVariant
    capabilities: frozenset[str]
    default_timeout: float
    rates: CostSchedule
    priority: int
    availability: Availability = Availability(AvailabilityState.UNKNOWN)
    consecutive_failures: int = 0
    last_probed_at: float | None = None

    @property
    def available(self) -> bool:
        return self.availability.is_available

    def can_run(self, task: Task) -> bool:
        return task.required_capabilities <= self.capabilities

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "variant": self.variant.value,
            "capabilities": sorted(self.capabilities),
            "availability": self.availability.state.value,
            "reason": self.availability.reason,
            "default_timeout_seconds": self.default_timeout,
            "cost_per_mtok": {
                "input": self.rates.input_per_mtok,
                "output": self.rates.output_per_mtok,
            },
            "consecutive_failures": self.consecutive_failures,
        }


class ProviderRegistry:
    """Owns the providers and their descriptors.

    Each descriptor has its own lock so probing one provider never holds up
    delegations to another.
    """

    def __init__(
        self,
        providers: Sequence[Provider],
        invoker: ProcessInvoker,
        reprobe_after_failures: int = 2,
        probe_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        ordered = sorted(providers, key=lambda p: p.priority)
        self._providers: dict[str, Provider] = {p.name: p for p in ordered}
        if len(self._providers) != len(ordered):
            raise ValueError("provider names must be unique")
        self._descriptors: dict[str, ProviderDescriptor] = {
            p.name: ProviderDescriptor(
                name=p.name,
                variant=p.variant,
                capabilities=p.capabilities,
                default_timeout=p.default_timeout,
                rates=p.rates,
                priority=p.priority,
            )
            for p in ordered
        }
        self._locks = {name: asyncio.Lock() for name in self._providers}
        self._invoker = invoker
        self._reprobe_after = reprobe_after_failures
        self._probe_ttl = probe_ttl_seconds
        self._clock = clock

    @property
    def names(self) -> list[str]:
        """Provider names in priority order."""
        return list(self._providers)

    def provider(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise InvalidRequest(
                f"unknown provider {name!r}; expected one of {self.names + [ANY_PROVIDER]}"
            ) from None

    def descriptor(self, name: str) -> ProviderDescriptor:
        self.provider(name)
        return self._descriptors[name]

    def descriptors(self) -> list[ProviderDescriptor]:
        return list(self._descriptors.values())

    def is_available(self, name: str) -> bool:
        return self.descriptor(name).available

    def candidates(self, task: Task) -> list[str]:
        """Providers to try for ``task``, first choice first.

        ``any`` follows priority order; a named provider goes first and the
        rest follow in priority order unless the task is pinned.
        """
        if task.provider == ANY_PROVIDER:
            return self.names
        self.provider(task.provider)
        if task.pinned:
            return [task.provider]
        return [task.provider] + [n for n in self.names if n != task.provider]

    async def probe(self, name: str) -> Availability:
        provider = self.provider(name)
        async with self._locks[name]:
            try:
                availability = await provider.probe_availability(self._invoker)
            except Exception as exc:
                availability = Availability.unavailable(f"probe failed: {exc}")
            self._set(name, availability)
        return availability

    async def probe_all(self) -> dict[str, Availability]:
        results = await asyncio.gather(*(self.probe(name) for name in self.names))
        return dict(zip(self.names, results, strict=True))

    def mark(self, name: str, availability: Availability) -> None:
        """Record an externally determined probe result."""
        self.provider(name)
        self._set(name, availability)

    async def ensure_fresh(self, name: str) -> ProviderDescriptor:
        """Re-probe lazily: never probed, repeated failures, or stale unavailability."""
        descriptor = self.descriptor(name)
        stale = (
            descriptor.last_probed_at is None
            or descriptor.consecutive_failures >= self._reprobe_after
            or (
                descriptor.availability.state is AvailabilityState.UNAVAILABLE
                and self._clock() - descriptor.last_probed_at > self._probe_ttl
            )
        )
        if not stale:
            return descriptor
        if self._locks[name].locked():
            # Another delegation is probing already; wait for its result
            async with self._locks[name]:
                return descriptor
        logger.info(
            "provider_reprobe",
            provider=name,
            consecutive_failures=descriptor.consecutive_failures,
        )
        await self.probe(name)
        return descriptor

    def record_success(self, name: str) -> None:
        self._descriptors[name].consecutive_failures = 0

    def record_failure(self, name: str, kind: FailureKind) -> None:
        if kind.fallback_eligible:
            self._descriptors[name].consecutive_failures += 1

    def _set(self, name: str, availability: Availability) -> None:
        descriptor = self._descriptors[name]
        previous = descriptor.availability.state
        descriptor.availability = availability
        descriptor.last_probed_at = self._clock()
        descriptor.consecutive_failures = 0
        if availability.is_available:
            logger.info("provider_available", provider=name)
        else:
            logger.warning(
                "provider_unavailable",
                provider=name,
                reason=availability.reason,
                previous=previous.value,
            )
