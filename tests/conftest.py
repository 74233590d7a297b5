"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Make _helpers importable from test files
sys.path.insert(0, str(Path(__file__).parent))

from _helpers import FakeProvider, fast_provider, large_provider  # noqa: E402

from praxio.invoker import ProcessInvoker  # noqa: E402
from praxio.sessions import SessionManager  # noqa: E402


@pytest.fixture
def work_root(tmp_path: Path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def fast() -> FakeProvider:
    return fast_provider()


@pytest.fixture
def large() -> FakeProvider:
    return large_provider()


@pytest.fixture
def invoker() -> ProcessInvoker:
    return ProcessInvoker(kill_grace_seconds=0.2)


@pytest.fixture
def sessions(work_root: Path) -> SessionManager:
    return SessionManager(work_root=work_root, idle_seconds=3600.0)
