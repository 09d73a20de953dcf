"""Status codes and classifications used across subsystem boundaries.

Values of RunStatus and StepStatus are stored in the database; changing
them is a schema change.
"""

from enum import StrEnum


class RunStatus(StrEnum):
    """Status of a pipeline run.

    Stored in the database (runs.status).
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """Whether the run can still accept step work."""
        return self in (RunStatus.QUEUED, RunStatus.RUNNING)


class StepStatus(StrEnum):
    """Status of a single named step inside a run.

    Stored inside the run's metrics blob (metrics.step_status).
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class InputStatus(StrEnum):
    """Status of a versioned project input record."""

    DRAFT = "draft"
    FINAL = "final"


class AdvanceAction(StrEnum):
    """What advance_run() did for the caller.

    Values:
        NOOP: Nothing to do - step is completed or another caller owns it
        STARTED: Step moved from pending to running
        RESUMED: Step moved back to running after a failure or an expired lease
    """

    NOOP = "noop"
    STARTED = "started"
    RESUMED = "resumed"


class TransitionConflict(StrEnum):
    """Why a conditional step transition was refused."""

    ALREADY_RUNNING = "already_running"
    ALREADY_COMPLETED = "already_completed"


class ErrorClassification(StrEnum):
    """Classification assigned to an error where it is raised.

    Downstream code branches on this value; it is never re-derived from
    message text.
    """

    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    CLIENT = "client"
    SCHEMA_MISMATCH = "schema_mismatch"
    UNEXPECTED = "unexpected"

    @property
    def retryable(self) -> bool:
        """Whether errors of this class are transient."""
        return self in _RETRYABLE


_RETRYABLE = frozenset(
    {
        ErrorClassification.TRANSPORT,
        ErrorClassification.TIMEOUT,
        ErrorClassification.RATE_LIMITED,
        ErrorClassification.SERVER,
    }
)
