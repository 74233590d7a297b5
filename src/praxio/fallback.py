"""Bounded provider fallback.

The first candidate is always attempted. A Timeout or Unavailable failure
earns exactly one more attempt on the next available provider that has the
capabilities the task asks for. Provider errors are returned as they are;
pinned tasks never move.
"""

from __future__ import annotations

import time

import structlog

from praxio.errors import InvalidRequest, PraxioError, ProviderError, ProviderUnavailable
from praxio.invoker import ProcessInvoker
from praxio.logs import preview
from praxio.models import Attempt, DelegationOutcome, Failure, ProviderResponse, Task
from praxio.providers.registry import ProviderRegistry
from praxio.sessions import Session

logger = structlog.get_logger()


class FallbackCoordinator:
    def __init__(self, registry: ProviderRegistry, invoker: ProcessInvoker) -> None:
        self._registry = registry
        self._invoker = invoker

    def plan(self, task: Task) -> list[str]:
        """Capable candidates for ``task`` in the order they may be tried."""
        candidates = self._registry.candidates(task)
        capable = [n for n in candidates if self._registry.descriptor(n).can_run(task)]
        if not capable:
            raise InvalidRequest(
                f"no provider offers {sorted(task.required_capabilities)}"
            )
        if task.provider in candidates and task.provider not in capable:
            missing = task.required_capabilities - self._registry.descriptor(task.provider).capabilities
            raise InvalidRequest(f"provider {task.provider!r} lacks {sorted(missing)}")
        return capable

    async def delegate(self, task: Task, session: Session) -> DelegationOutcome:
        """Run ``task`` with at most one fallback hop.

        Does not commit anything to the session; the caller advances the
        context of ``provider_used`` once it has the outcome.
        """
        start = time.monotonic()
        candidates = self.plan(task)
        attempts: list[Attempt] = []
        errors: list[PraxioError] = []

        primary = candidates[0]
        response, error = await self._attempt(primary, task, session, attempts)
        used = primary

        if error is not None and error.kind.fallback_eligible and not task.pinned:
            alternate = await self._pick_alternate(task, candidates[1:])
            if alternate is None:
                logger.info(
                    "fallback_skipped",
                    task_id=task.task_id,
                    provider=primary,
                    reason="no other provider available",
                )
            else:
                logger.warning(
                    "fallback_hop",
                    task_id=task.task_id,
                    from_provider=primary,
                    to_provider=alternate,
                    kind=error.kind.value,
                )
                errors.append(error)
                response, error = await self._attempt(alternate, task, session, attempts)
                used = alternate

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if error is not None:
            errors.append(error)
            return DelegationOutcome(
                task_id=task.task_id,
                success=False,
                provider_requested=task.provider,
                session_id=session.session_id,
                elapsed_ms=elapsed_ms,
                failure=Failure(
                    kind=error.kind,
                    message="; then ".join(str(e) for e in errors),
                    providers=tuple(a.provider for a in attempts),
                ),
                attempts=tuple(attempts),
            )

        assert response is not None
        descriptor = self._registry.descriptor(used)
        cost = response.cost_usd
        if cost is None:
            cost = descriptor.rates.estimate(response.usage)
        return DelegationOutcome(
            task_id=task.task_id,
            success=True,
            provider_requested=task.provider,
            provider_used=used,
            session_id=session.session_id,
            result=response.content,
            response=response,
            cost_usd=cost,
            elapsed_ms=elapsed_ms,
            attempts=tuple(attempts),
        )

    async def _attempt(
        self,
        name: str,
        task: Task,
        session: Session,
        attempts: list[Attempt],
    ) -> tuple[ProviderResponse | None, PraxioError | None]:
        descriptor = await self._registry.ensure_fresh(name)
        start = time.monotonic()
        response: ProviderResponse | None = None
        error: PraxioError | None = None

        if not descriptor.available:
            error = ProviderUnavailable(descriptor.availability.reason or "marked unavailable", name)
        else:
            provider = self._registry.provider(name)
            logger.info(
                "provider_attempt",
                task_id=task.task_id,
                provider=name,
                session_id=session.session_id,
                prompt=preview(task.prompt),
                prompt_length=len(task.prompt),
            )
            try:
                response = await provider.submit(task, session.peek_context(name), self._invoker)
            except PraxioError as exc:
                error = exc
            except Exception as exc:
                logger.exception("provider_crashed", task_id=task.task_id, provider=name)
                error = ProviderError(f"unexpected {type(exc).__name__}: {exc}", name)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if error is None:
            self._registry.record_success(name)
            attempts.append(Attempt(provider=name, kind=None, elapsed_ms=elapsed_ms))
        else:
            if error.provider is None:
                error.provider = name
            self._registry.record_failure(name, error.kind)
            attempts.append(
                Attempt(provider=name, kind=error.kind, message=error.message, elapsed_ms=elapsed_ms)
            )
            logger.warning(
                "provider_attempt_failed",
                task_id=task.task_id,
                provider=name,
                kind=error.kind.value,
                error=error.message[:200],
            )
        return response, error

    async def _pick_alternate(self, task: Task, rest: list[str]) -> str | None:
        for name in rest:
            descriptor = await self._registry.ensure_fresh(name)
            if descriptor.available and descriptor.can_run(task):
                return name
        return None

