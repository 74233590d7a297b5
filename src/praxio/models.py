"""Core data types passed between the delegation layers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from praxio.errors import FailureKind

ANY_PROVIDER = "any"


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


class ProviderVariant(str, Enum):
    """The two provider shapes praxio knows how to drive."""

    FAST_REASONING = "fast-reasoning"
    LARGE_CONTEXT = "large-context"


class AvailabilityState(str, Enum):
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Availability:
    state: AvailabilityState
    reason: str = ""

    @classmethod
    def available(cls) -> Availability:
        return cls(AvailabilityState.AVAILABLE)

    @classmethod
    def unavailable(cls, reason: str) -> Availability:
        return cls(AvailabilityState.UNAVAILABLE, reason)

    @property
    def is_available(self) -> bool:
        return self.state is AvailabilityState.AVAILABLE


@dataclass(frozen=True)
class Task:
    """A delegation request. Immutable once submitted."""

    prompt: str
    provider: str = ANY_PROVIDER
    allow_fallback: bool = True
    session_id: str | None = None
    timeout_seconds: float | None = None
    output_format: OutputFormat = OutputFormat.TEXT
    system_prompt: str | None = None
    model: str | None = None
    fallback_model: str | None = None  # model-level fallback inside the fast provider
    required_capabilities: frozenset[str] = frozenset()
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def pinned(self) -> bool:
        return self.provider != ANY_PROVIDER and not self.allow_fallback


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0
    thinking: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def to_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "total": self.total,
            "cache_creation": self.cache_creation,
            "cache_read": self.cache_read,
            "thinking": self.thinking,
        }


@dataclass(frozen=True)
class ProviderResponse:
    """Parsed output of one successful provider call."""

    content: str
    usage: TokenUsage
    primary_model: str = "unknown"
    all_models_used: tuple[str, ...] = ()
    cost_usd: float | None = None  # only when the provider reports it
    api_duration_ms: int = 0
    resume_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Attempt:
    """One provider attempt within a delegation."""

    provider: str
    kind: FailureKind | None  # None means the attempt succeeded
    message: str = ""
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "status": "ok" if self.kind is None else self.kind.value,
            "message": self.message,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str
    providers: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "providers": list(self.providers),
        }


@dataclass(frozen=True)
class DelegationOutcome:
    """What a caller gets back for one task, success or failure."""

    task_id: str
    success: bool
    provider_requested: str
    provider_used: str | None = None
    session_id: str | None = None
    result: str = ""
    response: ProviderResponse | None = None
    cost_usd: float = 0.0
    elapsed_ms: int = 0
    failure: Failure | None = None
    attempts: tuple[Attempt, ...] = ()

    @property
    def usage(self) -> TokenUsage:
        return self.response.usage if self.response else TokenUsage()

    @property
    def fell_back(self) -> bool:
        return len(self.attempts) > 1

    def to_dict(self, include_metadata: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "task_id": self.task_id,
            "success": self.success,
            "provider_requested": self.provider_requested,
            "provider_used": self.provider_used,
            "session_id": self.session_id,
            "elapsed_ms": self.elapsed_ms,
            "attempts": [a.to_dict() for a in self.attempts],
        }
        if self.success and self.response is not None:
            data["result"] = self.result
            data["usage"] = {
                "tokens": self.usage.to_dict(),
                "cost_usd": round(self.cost_usd, 6),
                "api_duration_ms": self.response.api_duration_ms,
            }
            data["primary_model"] = self.response.primary_model
            if include_metadata:
                data["all_models_used"] = list(self.response.all_models_used)
                if self.response.metadata:
                    data["metadata"] = dict(self.response.metadata)
        if self.failure is not None:
            data["error"] = self.failure.to_dict()
        return data


@dataclass(frozen=True)
class CostSchedule:
    """USD per million tokens."""

    input_per_mtok: float = 0.0
    output_per_mtok: float = 0.0

    def estimate(self, usage: TokenUsage) -> float:
        return (
            usage.input * self.input_per_mtok + usage.output * self.output_per_mtok
        ) / 1_000_000
