"""Run, step and input records plus orchestrator result types.

Step status entries are a tagged union keyed on ``status``. Each variant
only carries the fields its state allows:

- PendingStep: no timestamps
- RunningStep: startedAt required, no finishedAt
- CompletedStep / FailedStep: finishedAt allowed, FailedStep may carry an error

Entries are stored camelCase (startedAt/finishedAt) inside the run's
metrics blob; the Python attributes are snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from plinth.contracts.enums import (
    AdvanceAction,
    InputStatus,
    RunStatus,
    StepStatus,
)
from plinth.contracts.errors import StepError


def _check_iso_timestamp(value: str | None) -> str | None:
    if value is None:
        return value
    datetime.fromisoformat(value)
    return value


class StepErrorModel(BaseModel):
    """Validated shape of a step error inside the metrics blob."""

    model_config = ConfigDict(frozen=True, extra="ignore", strict=True)

    code: str
    message: str
    detail: str | None = None

    @classmethod
    def from_step_error(cls, error: StepError) -> StepErrorModel:
        return cls(code=error.code, message=error.message, detail=error.detail)

    def to_step_error(self) -> StepError:
        return StepError(code=self.code, message=self.message, detail=self.detail)


class _StepEntryBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", strict=True, populate_by_name=True)

    attempts: int = Field(default=0, ge=0)

    @property
    def state(self) -> StepStatus:
        return StepStatus(self.status)  # type: ignore[attr-defined]


class PendingStep(_StepEntryBase):
    """Step not yet started, or reset for a retry."""

    status: Literal["pending"] = "pending"


class RunningStep(_StepEntryBase):
    """Step claimed by a caller and currently executing."""

    status: Literal["running"] = "running"
    started_at: str = Field(alias="startedAt")

    @field_validator("started_at")
    @classmethod
    def _validate_started_at(cls, value: str) -> str:
        datetime.fromisoformat(value)
        return value


class CompletedStep(_StepEntryBase):
    """Step finished successfully. Absorbing: never rewritten."""

    status: Literal["completed"] = "completed"
    started_at: str | None = Field(default=None, alias="startedAt")
    finished_at: str | None = Field(default=None, alias="finishedAt")

    @field_validator("started_at", "finished_at")
    @classmethod
    def _validate_timestamps(cls, value: str | None) -> str | None:
        return _check_iso_timestamp(value)


class FailedStep(_StepEntryBase):
    """Step finished with a failure; may be reset to pending by a retry."""

    status: Literal["failed"] = "failed"
    started_at: str | None = Field(default=None, alias="startedAt")
    finished_at: str | None = Field(default=None, alias="finishedAt")
    error: StepErrorModel | None = None

    @field_validator("started_at", "finished_at")
    @classmethod
    def _validate_timestamps(cls, value: str | None) -> str | None:
        return _check_iso_timestamp(value)


StepStatusEntry = Annotated[
    PendingStep | RunningStep | CompletedStep | FailedStep,
    Field(discriminator="status"),
]

StepStatusMap = dict[str, PendingStep | RunningStep | CompletedStep | FailedStep]


@dataclass(frozen=True)
class Run:
    """One execution of the pipeline for a project at an input version.

    Attributes:
        metrics: Raw metrics blob; step statuses live under "step_status"
            and are decoded with plinth.core.runstore.step_status.
        output: Opaque JSON payload of a succeeded run (any JSON value)
        version: Optimistic concurrency counter, bumped on every write
    """

    run_id: str
    project_id: str
    input_version: int
    idempotency_key: str
    status: RunStatus
    created_at: datetime
    version: int
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: StepError | None = None
    output: Any = None
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProjectInput:
    """A versioned set of upstream inputs for a project."""

    input_id: str
    project_id: str
    version: int
    status: InputStatus
    payload: dict[str, Any]
    created_at: datetime


# === Orchestrator results ===
# The orchestrator never raises for repository problems; it returns one of
# these values so request handlers can map them to stable responses.


@dataclass(frozen=True)
class OrchestratorFailure:
    """Typed failure returned by orchestrator operations."""

    code: str
    message: str

    ok: Literal[False] = False


@dataclass(frozen=True)
class ActiveRun:
    """Result of get_or_create_active_run()."""

    run: Run
    created: bool

    ok: Literal[True] = True


@dataclass(frozen=True)
class AdvanceResult:
    """Result of advance_run()."""

    action: AdvanceAction
    step_status: PendingStep | RunningStep | CompletedStep | FailedStep

    ok: Literal[True] = True


@dataclass(frozen=True)
class RunUpdate:
    """Result of a run- or step-level write."""

    run: Run

    ok: Literal[True] = True
