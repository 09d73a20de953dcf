# tests/conftest.py
"""Shared test fixtures.

Database fixtures:
- db: in-memory SQLite (single shared connection), for single-threaded tests
- file_db: file-backed SQLite in tmp_path (WAL, busy timeout), for tests
  that hit the run store from several threads at once

Hypothesis Configuration:
- "ci" profile: 100 examples - default
- "nightly" profile: 1000 examples
- "debug" profile: 10 examples, verbose

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from plinth.core.config import PipelineSettings
from plinth.core.runstore import ProjectInputRepository, RunRepository, RunStoreDB
from plinth.engine.orchestrator import Orchestrator

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


class FakeClock:
    """Deterministic UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture(autouse=True)
def _clear_structlog_context() -> Iterator[None]:
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> Iterator[RunStoreDB]:
    database = RunStoreDB.in_memory()
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path: Path) -> Iterator[RunStoreDB]:
    database = RunStoreDB(f"sqlite:///{tmp_path / 'runs.db'}")
    yield database
    database.close()


@pytest.fixture
def repo(db: RunStoreDB, clock: FakeClock) -> RunRepository:
    return RunRepository(db, clock=clock)


@pytest.fixture
def inputs(db: RunStoreDB, clock: FakeClock) -> ProjectInputRepository:
    return ProjectInputRepository(db, clock=clock)


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    return PipelineSettings(version="v1", steps=("context", "evidence", "analysis", "opportunities"))


@pytest.fixture
def orchestrator(
    repo: RunRepository,
    inputs: ProjectInputRepository,
    pipeline_settings: PipelineSettings,
    clock: FakeClock,
) -> Orchestrator:
    return Orchestrator(repo, inputs, pipeline_settings, clock=clock)
