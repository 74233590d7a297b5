"""Usage ledger: token, time and cost counters per provider and per session.

Counters only ever grow. The provider section (which also carries the
totals) and the session section have separate locks, each held just long
enough to add a handful of numbers or copy the section out.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from praxio.models import DelegationOutcome, TokenUsage


@dataclass
class UsageCounters:
    delegations: int = 0
    failures: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cache_read: int = 0
    cache_creation: int = 0
    thinking: int = 0
    elapsed_ms: int = 0
    cost_usd: float = 0.0

    def add_success(self, usage: TokenUsage, elapsed_ms: int, cost_usd: float) -> None:
        self.delegations += 1
        self.tokens_in += usage.input
        self.tokens_out += usage.output
        self.cache_read += usage.cache_read
        self.cache_creation += usage.cache_creation
        self.thinking += usage.thinking
        self.elapsed_ms += max(0, elapsed_ms)
        self.cost_usd += max(0.0, cost_usd)

    def add_failure(self, elapsed_ms: int) -> None:
        self.failures += 1
        self.elapsed_ms += max(0, elapsed_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "delegations": self.delegations,
            "failures": self.failures,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cache_read": self.cache_read,
            "cache_creation": self.cache_creation,
            "thinking": self.thinking,
            "elapsed_ms": self.elapsed_ms,
            "cost_usd": round(self.cost_usd, 6),
        }


@dataclass(frozen=True)
class UsageSnapshot:
    totals: UsageCounters
    by_provider: dict[str, UsageCounters]
    by_session: dict[str, UsageCounters]
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "taken_at": self.taken_at.isoformat(),
            "totals": self.totals.to_dict(),
            "by_provider": {k: v.to_dict() for k, v in self.by_provider.items()},
            "by_session": {k: v.to_dict() for k, v in self.by_session.items()},
        }


class UsageTracker:
    """Accumulates completed outcomes. Safe to call from any thread."""

    def __init__(self) -> None:
        self._totals = UsageCounters()
        self._providers: dict[str, UsageCounters] = {}
        self._sessions: dict[str, UsageCounters] = {}
        self._provider_lock = threading.Lock()
        self._session_lock = threading.Lock()

    def record(self, outcome: DelegationOutcome) -> None:
        """Add one finished delegation.

        Successful usage is charged to ``provider_used``; every failed attempt
        (including one that was followed by a successful fallback) counts as a
        failure of the provider it ran on.
        """
        with self._provider_lock:
            for attempt in outcome.attempts:
                if attempt.kind is not None:
                    self._providers.setdefault(attempt.provider, UsageCounters()).add_failure(
                        attempt.elapsed_ms
                    )
            if outcome.success and outcome.provider_used is not None:
                self._providers.setdefault(outcome.provider_used, UsageCounters()).add_success(
                    outcome.usage, _served_ms(outcome), outcome.cost_usd
                )
                self._totals.add_success(outcome.usage, outcome.elapsed_ms, outcome.cost_usd)
            else:
                self._totals.add_failure(outcome.elapsed_ms)

        if outcome.session_id is None:
            return
        with self._session_lock:
            counters = self._sessions.setdefault(outcome.session_id, UsageCounters())
            if outcome.success:
                counters.add_success(outcome.usage, outcome.elapsed_ms, outcome.cost_usd)
            else:
                counters.add_failure(outcome.elapsed_ms)

    def snapshot(self) -> UsageSnapshot:
        with self._provider_lock:
            totals = replace(self._totals)
            by_provider = {k: replace(v) for k, v in self._providers.items()}
        with self._session_lock:
            by_session = {k: replace(v) for k, v in self._sessions.items()}
        return UsageSnapshot(totals=totals, by_provider=by_provider, by_session=by_session)

    def session(self, session_id: str) -> UsageCounters:
        with self._session_lock:
            return replace(self._sessions.get(session_id, UsageCounters()))


def _served_ms(outcome: DelegationOutcome) -> int:
    """Time of the attempt that produced the result, without any failed hop before it."""
    for attempt in outcome.attempts:
        if attempt.kind is None and attempt.provider == outcome.provider_used:
            return attempt.elapsed_ms
    return outcome.elapsed_ms
