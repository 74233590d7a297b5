"""Subprocess lifecycle for provider CLIs.

Every process is owned by exactly one ``spawn()`` scope. Leaving that scope
on any path (normal return, error, timeout, task cancellation) terminates the
whole process group before control returns to the caller, so a provider CLI
and anything it forked never outlive the delegation that started it.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from praxio.errors import ProviderError, ProviderTimeout, ProviderUnavailable

logger = structlog.get_logger()


@dataclass(frozen=True)
class Invocation:
    """A fully-built provider call: what to run, where, with which input."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: dict[str, str] | None = field(default=None, compare=False, hash=False)
    stdin: bytes | None = None


@dataclass(frozen=True)
class ProcessResult:
    stdout: str
    stderr: str
    returncode: int
    elapsed_ms: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessInvoker:
    """Runs invocations under a deadline and cleans up after them."""

    def __init__(self, kill_grace_seconds: float = 0.2) -> None:
        self._kill_grace = kill_grace_seconds
        self._live: dict[int, asyncio.subprocess.Process] = {}

    @property
    def live(self) -> list[int]:
        """PIDs of processes currently owned by a ``spawn()`` scope."""
        return list(self._live)

    @asynccontextmanager
    async def spawn(
        self,
        invocation: Invocation,
        provider: str | None = None,
    ) -> AsyncIterator[asyncio.subprocess.Process]:
        binary = invocation.argv[0]
        if invocation.cwd is not None:
            invocation.cwd.mkdir(parents=True, exist_ok=True)
        try:
            proc = await asyncio.create_subprocess_exec(
                *invocation.argv,
                stdin=(
                    asyncio.subprocess.PIPE
                    if invocation.stdin is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(invocation.cwd) if invocation.cwd is not None else None,
                env=invocation.env,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ProviderUnavailable(f"{binary} could not be executed: {exc}", provider) from exc
        except OSError as exc:
            raise ProviderError(f"failed to start {binary}: {exc}", provider) from exc

        self._live[proc.pid] = proc
        logger.debug("process_spawned", provider=provider, binary=binary, pid=proc.pid)
        try:
            yield proc
        finally:
            try:
                if proc.returncode is None:
                    await self._terminate(proc, provider)
            finally:
                self._live.pop(proc.pid, None)

    async def run(
        self,
        invocation: Invocation,
        timeout: float,
        provider: str | None = None,
    ) -> ProcessResult:
        """Run to completion or until ``timeout`` seconds elapse.

        Non-zero exit codes are returned, not raised; the provider decides
        what they mean. Raises ProviderTimeout, ProviderUnavailable (binary
        missing) or ProviderError (other spawn failures).
        """
        start = time.monotonic()
        async with self.spawn(invocation, provider) as proc:
            try:
                stdout, stderr = await asyncio.wait_for(
                    proc.communicate(invocation.stdin),
                    timeout=timeout,
                )
            except TimeoutError as exc:
                logger.warning(
                    "process_timeout",
                    provider=provider,
                    pid=proc.pid,
                    timeout_s=timeout,
                )
                raise ProviderTimeout(provider, timeout) from exc

        return ProcessResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=proc.returncode if proc.returncode is not None else -1,
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )

    async def _terminate(self, proc: asyncio.subprocess.Process, provider: str | None) -> None:
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace)
        except TimeoutError:
            await _kill_and_reap(proc)
        except asyncio.CancelledError:
            # Cancelled during the grace period: the group still has to die
            await _kill_and_reap(proc)
            raise
        logger.debug("process_terminated", provider=provider, pid=proc.pid, returncode=proc.returncode)


async def _kill_and_reap(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the group and wait for the exit status, even across cancellation."""
    _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
    reaped = asyncio.ensure_future(proc.wait())
    cancelled = False
    while not reaped.done():
        try:
            await asyncio.shield(reaped)
        except asyncio.CancelledError:
            cancelled = True
    if cancelled:
        raise asyncio.CancelledError


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        pass
