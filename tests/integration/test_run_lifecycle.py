"""End-to-end run lifecycle: orchestrator, run store and executor together."""

from __future__ import annotations

import asyncio

import pytest

from plinth.contracts import (
    ActiveRun,
    AdvanceAction,
    AdvanceResult,
    CompletedStep,
    FailedStep,
    InputStatus,
    RunningStep,
    RunStatus,
    RunUpdate,
    ServerError,
    StepError,
)
from plinth.core.runstore import ProjectInputRepository, RunRepository, RunStoreDB, step_status_of
from plinth.engine.executor import CallStats, ResilientCallExecutor
from plinth.engine.orchestrator import Orchestrator
from tests.conftest import FakeClock


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def system(file_db: RunStoreDB, clock: FakeClock) -> tuple[Orchestrator, RunRepository, ProjectInputRepository]:
    runs = RunRepository(file_db, clock=clock)
    inputs = ProjectInputRepository(file_db, clock=clock)
    return Orchestrator(runs, inputs, clock=clock), runs, inputs


def _status(runs: RunRepository, run_id: str) -> RunStatus:
    run = runs.get_by_id(run_id)
    assert run is not None
    return run.status


def test_failed_step_is_resumed_while_run_keeps_running(
    system: tuple[Orchestrator, RunRepository, ProjectInputRepository], clock: FakeClock
) -> None:
    orchestrator, runs, inputs = system
    for version in (1, 2, 3):
        inputs.add("P", {"version": version}, InputStatus.FINAL)

    active = orchestrator.get_or_create_active_run("P", allow_create=True)
    assert isinstance(active, ActiveRun)
    run_id = active.run.run_id
    assert active.created
    assert active.run.status is RunStatus.QUEUED
    assert active.run.input_version == 3

    evidence = orchestrator.advance_run(run_id, "evidence")
    assert isinstance(evidence, AdvanceResult)
    assert evidence.action is AdvanceAction.STARTED
    assert _status(runs, run_id) is RunStatus.RUNNING

    clock.advance(5)
    assert isinstance(orchestrator.mark_step_completed(run_id, "evidence"), RunUpdate)

    analysis = orchestrator.advance_run(run_id, "analysis")
    assert isinstance(analysis, AdvanceResult)
    assert analysis.action is AdvanceAction.STARTED

    clock.advance(5)
    failed = orchestrator.mark_step_failed(run_id, "analysis", StepError("SERVER", "upstream 503"))
    assert isinstance(failed, RunUpdate)
    assert isinstance(step_status_of(failed.run)["analysis"], FailedStep)
    assert failed.run.status is RunStatus.RUNNING

    clock.advance(5)
    resumed = orchestrator.advance_run(run_id, "analysis")
    assert isinstance(resumed, AdvanceResult)
    assert resumed.action is AdvanceAction.RESUMED
    assert isinstance(resumed.step_status, RunningStep)
    assert resumed.step_status.attempts == 2

    run = runs.get_by_id(run_id)
    assert run is not None
    assert run.status is RunStatus.RUNNING
    assert isinstance(step_status_of(run)["evidence"], CompletedStep)

    # A second trigger joins the in-flight run
    again = orchestrator.get_or_create_active_run("P", allow_create=True)
    assert isinstance(again, ActiveRun)
    assert again.run.run_id == run_id
    assert not again.created


def test_step_work_through_executor_records_outcome_and_telemetry(
    system: tuple[Orchestrator, RunRepository, ProjectInputRepository],
) -> None:
    orchestrator, runs, inputs = system
    inputs.add("P", {"name": "Acme"}, InputStatus.FINAL)
    active = orchestrator.get_or_create_active_run("P", allow_create=True)
    assert isinstance(active, ActiveRun)
    run_id = active.run.run_id
    executor = ResilientCallExecutor(default_max_retries=1, sleep=_no_sleep)

    async def always_failing() -> str:
        raise ServerError("upstream 503", provider="generation", status_code=503)

    async def do_step(step: str, operation) -> None:
        advanced = orchestrator.advance_run(run_id, step)
        assert isinstance(advanced, AdvanceResult)
        if advanced.action is AdvanceAction.NOOP:
            return
        stats = CallStats()
        try:
            await executor.execute(operation, provider="generation", stats=stats)
        except ServerError as e:
            orchestrator.mark_step_failed(run_id, step, e)
        else:
            orchestrator.mark_step_completed(run_id, step)
        finally:
            orchestrator.record_telemetry(run_id, step, stats)

    async def succeed() -> str:
        return "ok"

    asyncio.run(do_step("analysis", always_failing))
    asyncio.run(do_step("analysis", succeed))
    asyncio.run(do_step("analysis", always_failing))  # completed: no work happens

    run = runs.get_by_id(run_id)
    assert run is not None
    entry = step_status_of(run)["analysis"]
    assert isinstance(entry, CompletedStep)
    assert entry.attempts == 2
    telemetry = run.metrics["telemetry"]["analysis"]
    assert telemetry["requests"] == 3
    assert telemetry["retries"] == 1
    assert telemetry["failures"] == 1

    finished = orchestrator.mark_run_completed(run_id, {"opportunities": 3})
    assert isinstance(finished, RunUpdate)
    assert finished.run.status is RunStatus.SUCCEEDED
    assert step_status_of(finished.run)["analysis"] == entry
