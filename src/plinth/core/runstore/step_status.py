"""Step status codec: metrics["step_status"] <-> StepStatusMap.

The stored value is a JSON object keyed by step name. Decoding is
tolerant: an entry that fails validation becomes ``{"status": "pending"}``
and a warning is logged, so historical or partially migrated rows never
block new work. Sibling entries are unaffected.

Encoding emits camelCase timestamps (startedAt/finishedAt) and omits
absent fields.
"""

from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from plinth.contracts import (
    CompletedStep,
    FailedStep,
    PendingStep,
    Run,
    RunningStep,
    StepStatusEntry,
    StepStatusMap,
)

logger = structlog.get_logger(__name__)

STEP_STATUS_KEY = "step_status"

_entry_adapter: TypeAdapter[PendingStep | RunningStep | CompletedStep | FailedStep] = TypeAdapter(StepStatusEntry)


def validate_entry(entry: Any) -> PendingStep | RunningStep | CompletedStep | FailedStep | None:
    """Validate one raw entry; None if it does not match any variant."""
    try:
        return _entry_adapter.validate_python(entry)
    except ValidationError:
        return None


def parse_step_status(raw: Any) -> StepStatusMap:
    """Decode a stored step-status map. Never raises."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        logger.warning("Discarding step status map that is not an object", value_type=type(raw).__name__)
        return {}

    result: StepStatusMap = {}
    for step, value in raw.items():
        entry = validate_entry(value)
        if entry is None:
            logger.warning("Replacing malformed step status entry with pending", step=step)
            entry = PendingStep()
        result[str(step)] = entry
    return result


def serialize_step_status(step_status: StepStatusMap) -> dict[str, dict[str, Any]]:
    """Encode a step-status map to its JSON-safe stored form."""
    return {step: entry.model_dump(by_alias=True, exclude_none=True, mode="json") for step, entry in step_status.items()}


def step_status_of(run: Run) -> StepStatusMap:
    """Decoded step-status map of a run."""
    return parse_step_status(run.metrics.get(STEP_STATUS_KEY))


def with_step_status(metrics: dict[str, Any], step_status: StepStatusMap) -> dict[str, Any]:
    """Copy of metrics with the step-status map replaced."""
    updated = dict(metrics)
    updated[STEP_STATUS_KEY] = serialize_step_status(step_status)
    return updated
