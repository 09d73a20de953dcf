# src/plinth/core/runstore/run_repository.py
"""RunRepository: durable run records and the conditional step transition.

All coordination between concurrent triggers (threads, processes,
replicas) goes through this module. Every write bumps ``runs.version``.
Writes to the metrics blob are read-modify-write cycles guarded by
``WHERE version = :observed``; on a lost race the row is re-read and the
decision re-made against the winner's state. No in-process locks.

Step-status rules enforced here, whatever the caller:
- ``completed`` is absorbing: no write replaces a completed entry
- a transition into ``running`` only succeeds from pending or failed
  (or from a running entry whose lease has expired, when a lease is given)
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, literal, select, update
from sqlalchemy.exc import IntegrityError

from plinth.contracts import (
    CompletedStep,
    FailedStep,
    PendingStep,
    Run,
    RunningStep,
    RunStatus,
    StepError,
    StepErrorModel,
    TransitionConflict,
)
from plinth.core.runstore._helpers import dumps, generate_id, now
from plinth.core.runstore.database import RunStoreDB
from plinth.core.runstore.repositories import RunLoader
from plinth.core.runstore.schema import runs_table
from plinth.core.runstore.step_status import (
    STEP_STATUS_KEY,
    parse_step_status,
    with_step_status,
)

logger = structlog.get_logger(__name__)

TELEMETRY_KEY = "telemetry"

StepEntry = PendingStep | RunningStep | CompletedStep | FailedStep


class RunNotFoundError(LookupError):
    """No run with the given id exists."""


class ConcurrentUpdateError(RuntimeError):
    """A guarded write kept losing races and gave up."""


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _started_at_of(entry: StepEntry) -> str | None:
    if isinstance(entry, PendingStep):
        return None
    return entry.started_at


class RunRepository:
    """Repository for run records.

    Example:
        repo = RunRepository(RunStoreDB.in_memory())
        run, created = repo.create("p1:3:v1", "p1", 3)
        outcome = repo.try_conditional_step_transition(run.run_id, "evidence", now())
    """

    def __init__(
        self,
        db: RunStoreDB,
        *,
        clock: Callable[[], datetime] = now,
        max_write_attempts: int = 50,
    ) -> None:
        self._db = db
        self._clock = clock
        self._max_write_attempts = max_write_attempts
        self._loader = RunLoader()

    # === Reads ===

    def get_by_id(self, run_id: str) -> Run | None:
        query = select(runs_table).where(runs_table.c.run_id == run_id)
        with self._db.connection() as conn:
            row = conn.execute(query).fetchone()
        return self._loader.load(row) if row is not None else None

    def get_by_idempotency_key(self, idempotency_key: str) -> Run | None:
        query = select(runs_table).where(runs_table.c.idempotency_key == idempotency_key)
        with self._db.connection() as conn:
            row = conn.execute(query).fetchone()
        return self._loader.load(row) if row is not None else None

    def get_latest_for_project(self, project_id: str) -> Run | None:
        """Most recently created run for a project (highest project_seq)."""
        query = (
            select(runs_table)
            .where(runs_table.c.project_id == project_id)
            .order_by(runs_table.c.project_seq.desc())
            .limit(1)
        )
        with self._db.connection() as conn:
            row = conn.execute(query).fetchone()
        return self._loader.load(row) if row is not None else None

    def list_for_project(self, project_id: str) -> list[Run]:
        """All runs for a project, newest first."""
        query = (
            select(runs_table)
            .where(runs_table.c.project_id == project_id)
            .order_by(runs_table.c.project_seq.desc())
        )
        with self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [self._loader.load(row) for row in rows]

    def _require(self, run_id: str) -> Run:
        run = self.get_by_id(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    # === Creation ===

    def create(self, idempotency_key: str, project_id: str, input_version: int) -> tuple[Run, bool]:
        """Return the run for a key, inserting a queued run if none exists.

        Concurrent callers with the same key converge on one row: the
        loser of the insert race hits the unique constraint and re-reads.
        Each new run takes the next ``project_seq`` for its project; a
        collision on that constraint alone is retried with a fresh number.

        Returns:
            (run, created) - created is False when the key already existed
        """
        for _ in range(self._max_write_attempts):
            existing = self.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                return existing, False

            run_id = generate_id()
            try:
                with self._db.connection() as conn:
                    current = conn.execute(
                        select(func.max(runs_table.c.project_seq)).where(runs_table.c.project_id == project_id)
                    ).scalar()
                    conn.execute(
                        runs_table.insert().values(
                            run_id=run_id,
                            project_id=project_id,
                            project_seq=(current or 0) + 1,
                            input_version=input_version,
                            idempotency_key=idempotency_key,
                            status=RunStatus.QUEUED.value,
                            version=0,
                            created_at=self._clock(),
                            metrics_json="{}",
                        )
                    )
            except IntegrityError:
                winner = self.get_by_idempotency_key(idempotency_key)
                if winner is not None:
                    logger.debug("Lost run creation race", idempotency_key=idempotency_key, run_id=winner.run_id)
                    return winner, False
                logger.debug("Run sequence number already taken, retrying", project_id=project_id)
                continue

            logger.info(
                "Created run",
                run_id=run_id,
                project_id=project_id,
                input_version=input_version,
                idempotency_key=idempotency_key,
            )
            return self._require(run_id), True
        raise RuntimeError(f"Could not allocate a run sequence number for project {project_id}")

    # === Guarded metrics writes ===

    def _compare_and_swap(self, run: Run, metrics: dict[str, Any]) -> bool:
        stmt = (
            update(runs_table)
            .where(runs_table.c.run_id == run.run_id)
            .where(runs_table.c.version == run.version)
            .values(metrics_json=dumps(metrics), version=run.version + 1)
        )
        with self._db.connection() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 1

    def _mutate_metrics(
        self,
        run_id: str,
        decide: Callable[[Run], dict[str, Any] | None],
    ) -> Run:
        """Read-decide-write loop over the metrics blob.

        ``decide`` returns the new metrics, or None to leave the run as is.
        It may be called several times and must not have side effects.
        """
        for _ in range(self._max_write_attempts):
            run = self._require(run_id)
            metrics = decide(run)
            if metrics is None:
                return run
            if self._compare_and_swap(run, metrics):
                return dataclasses.replace(run, metrics=metrics, version=run.version + 1)
            logger.debug("Lost metrics write race, re-reading", run_id=run_id, observed_version=run.version)
        raise ConcurrentUpdateError(f"Gave up writing run {run_id} after {self._max_write_attempts} conflicting attempts")

    def _mutate_step(
        self,
        run_id: str,
        step: str,
        decide: Callable[[StepEntry], StepEntry | None],
    ) -> Run:
        def decide_metrics(run: Run) -> dict[str, Any] | None:
            entries = parse_step_status(run.metrics.get(STEP_STATUS_KEY))
            replacement = decide(entries.get(step, PendingStep()))
            if replacement is None:
                return None
            entries[step] = replacement
            return with_step_status(run.metrics, entries)

        return self._mutate_metrics(run_id, decide_metrics)

    def try_conditional_step_transition(
        self,
        run_id: str,
        step: str,
        started_at: datetime,
        *,
        lease_seconds: float | None = None,
    ) -> Run | TransitionConflict:
        """Move a step to running unless it is already running or completed.

        Exactly one of any number of concurrent callers wins. The others
        get the conflict they observed against the winner's write.

        Args:
            run_id: Run to update
            step: Step name
            started_at: Timestamp recorded as the step's startedAt
            lease_seconds: If set, a running step whose startedAt is at least
                this old may be taken over

        Returns:
            The updated run, or the TransitionConflict that blocked the write
        """
        for _ in range(self._max_write_attempts):
            run = self._require(run_id)
            entries = parse_step_status(run.metrics.get(STEP_STATUS_KEY))
            current = entries.get(step, PendingStep())

            if isinstance(current, CompletedStep):
                return TransitionConflict.ALREADY_COMPLETED
            if isinstance(current, RunningStep):
                held_since = _parse_timestamp(current.started_at)
                if lease_seconds is None or started_at - held_since < timedelta(seconds=lease_seconds):
                    return TransitionConflict.ALREADY_RUNNING
                logger.info(
                    "Reclaiming step with expired lease",
                    run_id=run_id,
                    step=step,
                    held_since=current.started_at,
                    lease_seconds=lease_seconds,
                )

            entries[step] = RunningStep(started_at=started_at.isoformat(), attempts=current.attempts + 1)
            metrics = with_step_status(run.metrics, entries)
            if self._compare_and_swap(run, metrics):
                return dataclasses.replace(run, metrics=metrics, version=run.version + 1)
            logger.debug("Lost step transition race, re-reading", run_id=run_id, step=step)
        raise ConcurrentUpdateError(f"Gave up transitioning {step} on run {run_id} after {self._max_write_attempts} attempts")

    def reset_failed_step(self, run_id: str, step: str) -> Run:
        """Return a failed step to pending; any other state is left alone."""

        def decide(current: StepEntry) -> StepEntry | None:
            if isinstance(current, FailedStep):
                return PendingStep(attempts=current.attempts)
            return None

        return self._mutate_step(run_id, step, decide)

    def reset_step(self, run_id: str, step: str) -> Run:
        """Return a running or failed step to pending (operator recovery).

        Completed and pending entries are left unchanged.
        """

        def decide(current: StepEntry) -> StepEntry | None:
            if isinstance(current, RunningStep | FailedStep):
                return PendingStep(attempts=current.attempts)
            return None

        return self._mutate_step(run_id, step, decide)

    def set_step_completed(self, run_id: str, step: str, finished_at: datetime) -> Run:
        """Mark a step completed. A step already completed keeps its timestamps."""

        def decide(current: StepEntry) -> StepEntry | None:
            if isinstance(current, CompletedStep):
                return None
            return CompletedStep(
                started_at=_started_at_of(current),
                finished_at=finished_at.isoformat(),
                attempts=current.attempts,
            )

        return self._mutate_step(run_id, step, decide)

    def set_step_failed(self, run_id: str, step: str, error: StepError, finished_at: datetime) -> Run:
        """Mark a step failed with a structured error. Completed steps are kept."""

        def decide(current: StepEntry) -> StepEntry | None:
            if isinstance(current, CompletedStep):
                return None
            return FailedStep(
                started_at=_started_at_of(current),
                finished_at=finished_at.isoformat(),
                attempts=current.attempts,
                error=StepErrorModel.from_step_error(error),
            )

        return self._mutate_step(run_id, step, decide)

    def update_metrics(self, run_id: str, updates: Mapping[str, Any]) -> Run:
        """Merge top-level keys into the metrics blob.

        The step-status map is owned by the step methods and cannot be
        replaced here.
        """
        if STEP_STATUS_KEY in updates:
            raise ValueError(f"{STEP_STATUS_KEY!r} is written through the step transition methods")

        def decide(run: Run) -> dict[str, Any]:
            merged = dict(run.metrics)
            merged.update(updates)
            return merged

        return self._mutate_metrics(run_id, decide)

    def record_telemetry(self, run_id: str, step: str, counters: Mapping[str, int]) -> Run:
        """Add call counters into metrics["telemetry"][step]."""

        def decide(run: Run) -> dict[str, Any]:
            telemetry = run.metrics.get(TELEMETRY_KEY)
            telemetry = dict(telemetry) if isinstance(telemetry, dict) else {}
            existing = telemetry.get(step)
            totals = dict(existing) if isinstance(existing, dict) else {}
            for name, value in counters.items():
                previous = totals.get(name, 0)
                totals[name] = (previous if isinstance(previous, int) else 0) + value
            telemetry[step] = totals
            merged = dict(run.metrics)
            merged[TELEMETRY_KEY] = telemetry
            return merged

        return self._mutate_metrics(run_id, decide)

    # === Run-level transitions (unconditional) ===

    def _update_run(self, run_id: str, **values: Any) -> Run:
        stmt = update(runs_table).where(runs_table.c.run_id == run_id).values(version=runs_table.c.version + 1, **values)
        with self._db.connection() as conn:
            result = conn.execute(stmt)
        if result.rowcount == 0:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return self._require(run_id)

    def set_running(self, run_id: str, started_at: datetime | None = None) -> Run:
        """Mark the run running. An existing started_at is preserved."""
        return self._update_run(
            run_id,
            status=RunStatus.RUNNING.value,
            started_at=func.coalesce(
                runs_table.c.started_at,
                literal(started_at or self._clock(), runs_table.c.started_at.type),
            ),
        )

    def set_succeeded(
        self,
        run_id: str,
        output: Any = None,
        finished_at: datetime | None = None,
    ) -> Run:
        return self._update_run(
            run_id,
            status=RunStatus.SUCCEEDED.value,
            finished_at=finished_at or self._clock(),
            output_json=dumps(output) if output is not None else None,
            error_code=None,
            error_message=None,
            error_detail=None,
        )

    def set_failed(self, run_id: str, error: StepError, finished_at: datetime | None = None) -> Run:
        return self._update_run(
            run_id,
            status=RunStatus.FAILED.value,
            finished_at=finished_at or self._clock(),
            error_code=error.code,
            error_message=error.message,
            error_detail=error.detail,
        )
