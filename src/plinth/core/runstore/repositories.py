"""Row loaders for run store records.

Handles the seam between SQLAlchemy rows (strings, JSON text) and domain
objects (strict enum types). The run store is our own data: an unknown
status, a metrics blob that is not a JSON object, or an output column that
is not valid JSON is a SchemaMismatchError, not something to coerce.

The one tolerant path is the step-status map inside metrics, decoded by
plinth.core.runstore.step_status.
"""

import json
from typing import Any

from sqlalchemy.engine import Row as SARow

from plinth.contracts import (
    InputStatus,
    ProjectInput,
    Run,
    RunStatus,
    SchemaMismatchError,
    StepError,
)
from plinth.core.runstore._helpers import ensure_utc


def _load_json(raw: str, *, column: str, key: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise SchemaMismatchError(f"{column} for {key} is not valid JSON: {e}") from e


def _load_json_object(raw: str | None, *, column: str, key: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    value = _load_json(raw, column=column, key=key)
    if not isinstance(value, dict):
        raise SchemaMismatchError(f"{column} for {key} must be a JSON object, got {type(value).__name__}")
    return value


class RunLoader:
    """Loads Run records from database rows."""

    def load(self, row: SARow[Any]) -> Run:
        """Load Run from database row.

        Raises:
            SchemaMismatchError: Unknown status or malformed JSON columns
        """
        try:
            status = RunStatus(row.status)
        except ValueError as e:
            raise SchemaMismatchError(f"Run {row.run_id} has unknown status {row.status!r}") from e

        error: StepError | None = None
        if row.error_code is not None:
            error = StepError(code=row.error_code, message=row.error_message or "", detail=row.error_detail)

        metrics = _load_json_object(row.metrics_json, column="metrics_json", key=row.run_id)
        # Output is opaque: any JSON value is a valid payload
        output = _load_json(row.output_json, column="output_json", key=row.run_id) if row.output_json is not None else None

        return Run(
            run_id=row.run_id,
            project_id=row.project_id,
            input_version=row.input_version,
            idempotency_key=row.idempotency_key,
            status=status,
            created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
            version=row.version,
            started_at=ensure_utc(row.started_at),
            finished_at=ensure_utc(row.finished_at),
            error=error,
            output=output,
            metrics=metrics if metrics is not None else {},
        )


class ProjectInputLoader:
    """Loads ProjectInput records from database rows."""

    def load(self, row: SARow[Any]) -> ProjectInput:
        try:
            status = InputStatus(row.status)
        except ValueError as e:
            raise SchemaMismatchError(f"Project input {row.input_id} has unknown status {row.status!r}") from e
        payload = _load_json_object(row.input_json, column="input_json", key=row.input_id)
        return ProjectInput(
            input_id=row.input_id,
            project_id=row.project_id,
            version=row.version,
            status=status,
            payload=payload if payload is not None else {},
            created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
        )
