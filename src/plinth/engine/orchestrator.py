# src/plinth/engine/orchestrator.py
"""Orchestrator: the run/step state machine over the run store.

Run states:  queued -> running -> {succeeded, failed}
Step states: pending -> running -> {completed, failed}
             failed -(retry)-> pending -> running -> ...
             completed is absorbing

The orchestrator never runs step work. Callers ask advance_run() for
permission immediately before doing a step, do the work only on
``started``/``resumed``, then report back with mark_step_completed() or
mark_step_failed().

Repository problems are returned as OrchestratorFailure values, never
raised, so request handlers can map them to stable responses.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from plinth.contracts import (
    ActiveRun,
    AdvanceAction,
    AdvanceResult,
    CompletedStep,
    FailedStep,
    OrchestratorFailure,
    PendingStep,
    Run,
    RunningStep,
    RunStatus,
    RunUpdate,
    SchemaMismatchError,
    StepError,
    StepStatusMap,
    TransitionConflict,
)
from plinth.core.config import PipelineSettings
from plinth.core.runstore import (
    ConcurrentUpdateError,
    ProjectInputRepository,
    RunNotFoundError,
    RunRepository,
    step_status_of,
)
from plinth.engine.executor import CallStats

logger = structlog.get_logger(__name__)

# Failure codes
NOT_FOUND = "NOT_FOUND"
NO_ACTIVE_RUN = "NO_ACTIVE_RUN"
NO_INPUTS = "NO_INPUTS"
UNKNOWN_STEP = "UNKNOWN_STEP"
RUN_TERMINAL = "RUN_TERMINAL"
STEP_COMPLETED = "STEP_COMPLETED"
SCHEMA_MISMATCH = "SCHEMA_MISMATCH"
DATABASE_ERROR = "DATABASE_ERROR"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


def make_idempotency_key(project_id: str, input_version: int, pipeline_version: str) -> str:
    """Deterministic run key: one run per (project, input version, pipeline version)."""
    return f"{project_id}:{input_version}:{pipeline_version}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Orchestrator:
    """Gatekeeper for run creation and step execution.

    Example:
        orchestrator = Orchestrator(runs, inputs, settings.pipeline)

        active = orchestrator.get_or_create_active_run("p1", allow_create=True)
        advanced = orchestrator.advance_run(active.run.run_id, "evidence")
        if advanced.ok and advanced.action is not AdvanceAction.NOOP:
            ...  # do the step's work
            orchestrator.mark_step_completed(active.run.run_id, "evidence")
    """

    def __init__(
        self,
        runs: RunRepository,
        inputs: ProjectInputRepository,
        settings: PipelineSettings | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._runs = runs
        self._inputs = inputs
        self._settings = settings or PipelineSettings()
        self._clock = clock

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    # === Run creation ===

    def get_or_create_active_run(
        self,
        project_id: str,
        *,
        run_id: str | None = None,
        allow_create: bool = False,
        pipeline_version: str | None = None,
    ) -> ActiveRun | OrchestratorFailure:
        """Return the run to work on for a project.

        An explicit run id wins if it belongs to the project. Otherwise a
        queued or running latest run is reused, so a second trigger joins the
        in-flight run. Creation goes through the idempotent
        RunRepository.create(), so racing creators converge on one row.
        """
        try:
            return self._get_or_create_active_run(project_id, run_id, allow_create, pipeline_version)
        except Exception as e:
            return self._failure_for(e, operation="get_or_create_active_run", project_id=project_id, run_id=run_id)

    def _get_or_create_active_run(
        self,
        project_id: str,
        run_id: str | None,
        allow_create: bool,
        pipeline_version: str | None,
    ) -> ActiveRun | OrchestratorFailure:
        if run_id is not None:
            run = self._runs.get_by_id(run_id)
            # A run id from another project is reported exactly like a missing one
            if run is None or run.project_id != project_id:
                return OrchestratorFailure(NOT_FOUND, f"Run not found: {run_id} (project {project_id})")
            return ActiveRun(run=run, created=False)

        latest = self._runs.get_latest_for_project(project_id)
        if latest is not None and latest.status.is_active:
            logger.debug("Reusing active run", run_id=latest.run_id, project_id=project_id, status=latest.status.value)
            return ActiveRun(run=latest, created=False)

        if not allow_create:
            return OrchestratorFailure(NO_ACTIVE_RUN, f"No queued or running run for project {project_id}")

        project_input = self._inputs.latest(project_id)
        if project_input is None:
            return OrchestratorFailure(NO_INPUTS, f"Project {project_id} has no inputs; complete setup first")

        key = make_idempotency_key(project_id, project_input.version, pipeline_version or self._settings.version)
        run, created = self._runs.create(key, project_id, project_input.version)
        return ActiveRun(run=run, created=created)

    # === Step advancement ===

    def advance_run(self, run_id: str, step: str) -> AdvanceResult | OrchestratorFailure:
        """Claim a step for execution.

        Returns:
            AdvanceResult with action:
            - NOOP: completed, or running under another caller (including
              a caller that won a race against this one)
            - STARTED: first transition into running
            - RESUMED: running again after a failure, reset or lease expiry
        """
        unknown = self._check_step(step)
        if unknown is not None:
            return unknown
        try:
            return self._advance_run(run_id, step)
        except Exception as e:
            return self._failure_for(e, operation="advance_run", run_id=run_id, step=step)

    def _advance_run(self, run_id: str, step: str) -> AdvanceResult | OrchestratorFailure:
        run = self._runs.get_by_id(run_id)
        if run is None:
            return OrchestratorFailure(NOT_FOUND, f"Run not found: {run_id}")

        timestamp = self._clock()
        current = step_status_of(run).get(step, PendingStep())

        if isinstance(current, CompletedStep):
            return AdvanceResult(action=AdvanceAction.NOOP, step_status=current)
        if isinstance(current, RunningStep) and not self._lease_expired(current, timestamp):
            return AdvanceResult(action=AdvanceAction.NOOP, step_status=current)
        if not run.status.is_active:
            return OrchestratorFailure(RUN_TERMINAL, f"Run {run_id} is {run.status.value}; no further step work accepted")

        resumed = current.attempts > 0 or isinstance(current, RunningStep | FailedStep)
        if isinstance(current, FailedStep):
            logger.info("Resetting failed step for retry", run_id=run_id, step=step, attempts=current.attempts)
            self._runs.reset_failed_step(run_id, step)

        outcome = self._runs.try_conditional_step_transition(
            run_id,
            step,
            timestamp,
            lease_seconds=self._settings.step_lease_seconds,
        )
        if isinstance(outcome, TransitionConflict):
            observed = self._observed_entry(run_id, step)
            logger.debug("Step already claimed", run_id=run_id, step=step, conflict=outcome.value)
            return AdvanceResult(action=AdvanceAction.NOOP, step_status=observed)

        if outcome.status is RunStatus.QUEUED:
            self._try_mark_running(run_id, timestamp)

        entry = step_status_of(outcome)[step]
        action = AdvanceAction.RESUMED if resumed else AdvanceAction.STARTED
        logger.info(
            "Step resumed" if resumed else "Step started",
            run_id=run_id,
            step=step,
            attempts=entry.attempts,
        )
        return AdvanceResult(action=action, step_status=entry)

    def _lease_expired(self, entry: RunningStep, timestamp: datetime) -> bool:
        lease = self._settings.step_lease_seconds
        if lease is None:
            return False
        held_since = datetime.fromisoformat(entry.started_at)
        if held_since.tzinfo is None:
            held_since = held_since.replace(tzinfo=UTC)
        return timestamp - held_since >= timedelta(seconds=lease)

    def _observed_entry(self, run_id: str, step: str) -> PendingStep | RunningStep | CompletedStep | FailedStep:
        latest = self._runs.get_by_id(run_id)
        if latest is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return step_status_of(latest).get(step, PendingStep())

    def _try_mark_running(self, run_id: str, timestamp: datetime) -> None:
        # The step transition is already committed; the run status is cosmetic here
        try:
            self._runs.set_running(run_id, timestamp)
        except (SQLAlchemyError, RunNotFoundError) as e:
            logger.warning("Could not mark run running", run_id=run_id, error=str(e))

    # === Terminal step transitions ===

    def mark_step_completed(self, run_id: str, step: str) -> RunUpdate | OrchestratorFailure:
        """Record a step as completed. An already completed step is left as is."""
        unknown = self._check_step(step)
        if unknown is not None:
            return unknown
        try:
            run = self._runs.set_step_completed(run_id, step, self._clock())
        except Exception as e:
            return self._failure_for(e, operation="mark_step_completed", run_id=run_id, step=step)
        logger.info("Step completed", run_id=run_id, step=step)
        return RunUpdate(run=run)

    def mark_step_failed(self, run_id: str, step: str, error: StepError | BaseException) -> RunUpdate | OrchestratorFailure:
        """Record a step failure. Exceptions are normalized with StepError.from_exception()."""
        unknown = self._check_step(step)
        if unknown is not None:
            return unknown
        step_error = error if isinstance(error, StepError) else StepError.from_exception(error)
        try:
            run = self._runs.set_step_failed(run_id, step, step_error, self._clock())
        except Exception as e:
            return self._failure_for(e, operation="mark_step_failed", run_id=run_id, step=step)
        logger.warning("Step failed", run_id=run_id, step=step, code=step_error.code, message=step_error.message)
        return RunUpdate(run=run)

    # === Terminal run transitions ===

    def mark_run_completed(self, run_id: str, output: Any = None) -> RunUpdate | OrchestratorFailure:
        try:
            run = self._runs.set_succeeded(run_id, output, self._clock())
        except Exception as e:
            return self._failure_for(e, operation="mark_run_completed", run_id=run_id)
        logger.info("Run succeeded", run_id=run_id)
        return RunUpdate(run=run)

    def mark_run_failed(self, run_id: str, error: StepError | BaseException) -> RunUpdate | OrchestratorFailure:
        run_error = error if isinstance(error, StepError) else StepError.from_exception(error)
        try:
            run = self._runs.set_failed(run_id, run_error, self._clock())
        except Exception as e:
            return self._failure_for(e, operation="mark_run_failed", run_id=run_id)
        logger.warning("Run failed", run_id=run_id, code=run_error.code, message=run_error.message)
        return RunUpdate(run=run)

    # === Operator recovery and telemetry ===

    def reset_step(self, run_id: str, step: str) -> RunUpdate | OrchestratorFailure:
        """Force a running or failed step back to pending.

        The recovery path for steps left running by a crashed process when
        no lease is configured. Completed steps are never reset.
        """
        unknown = self._check_step(step)
        if unknown is not None:
            return unknown
        try:
            run = self._runs.reset_step(run_id, step)
        except Exception as e:
            return self._failure_for(e, operation="reset_step", run_id=run_id, step=step)
        entry = step_status_of(run).get(step, PendingStep())
        if isinstance(entry, CompletedStep):
            return OrchestratorFailure(STEP_COMPLETED, f"Step {step} of run {run_id} is completed and cannot be reset")
        logger.info("Step reset by operator", run_id=run_id, step=step)
        return RunUpdate(run=run)

    def record_telemetry(
        self,
        run_id: str,
        step: str,
        stats: CallStats | Mapping[str, int],
    ) -> RunUpdate | OrchestratorFailure:
        """Add call counters into the run's metrics under telemetry[step]."""
        unknown = self._check_step(step)
        if unknown is not None:
            return unknown
        counters = stats.to_dict() if isinstance(stats, CallStats) else dict(stats)
        try:
            run = self._runs.record_telemetry(run_id, step, counters)
        except Exception as e:
            return self._failure_for(e, operation="record_telemetry", run_id=run_id, step=step)
        return RunUpdate(run=run)

    def get_step_status(self, run_id: str) -> tuple[Run, StepStatusMap] | OrchestratorFailure:
        """Run plus its decoded step map; every configured step is present."""
        try:
            run = self._runs.get_by_id(run_id)
        except Exception as e:
            return self._failure_for(e, operation="get_step_status", run_id=run_id)
        if run is None:
            return OrchestratorFailure(NOT_FOUND, f"Run not found: {run_id}")
        decoded = step_status_of(run)
        ordered: StepStatusMap = {name: decoded.get(name, PendingStep()) for name in self._settings.steps}
        for name, entry in decoded.items():
            ordered.setdefault(name, entry)
        return run, ordered

    # === Helpers ===

    def _check_step(self, step: str) -> OrchestratorFailure | None:
        if step not in self._settings.steps:
            return OrchestratorFailure(
                UNKNOWN_STEP,
                f"Unknown step {step!r}; expected one of {', '.join(self._settings.steps)}",
            )
        return None

    def _failure_for(self, error: Exception, *, operation: str, **context: Any) -> OrchestratorFailure:
        if isinstance(error, RunNotFoundError):
            return OrchestratorFailure(NOT_FOUND, str(error))
        if isinstance(error, SchemaMismatchError):
            logger.error("Persisted run data failed validation", operation=operation, error=str(error), **context)
            return OrchestratorFailure(SCHEMA_MISMATCH, str(error))
        if isinstance(error, SQLAlchemyError | ConcurrentUpdateError):
            logger.error("Run store operation failed", operation=operation, error=str(error), **context)
            return OrchestratorFailure(DATABASE_ERROR, f"{operation} failed: {error}")
        logger.error("Unexpected orchestrator error", operation=operation, exc_info=error, **context)
        return OrchestratorFailure(UNEXPECTED_ERROR, f"{operation} failed: {type(error).__name__}: {error}")
