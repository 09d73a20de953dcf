"""Run store: durable run records, project inputs and the step-status codec.

Uses SQLAlchemy Core over SQLite or PostgreSQL.
"""

from plinth.core.runstore.database import RunStoreDB
from plinth.core.runstore.inputs import ProjectInputRepository
from plinth.core.runstore.run_repository import (
    ConcurrentUpdateError,
    RunNotFoundError,
    RunRepository,
)
from plinth.core.runstore.step_status import (
    parse_step_status,
    serialize_step_status,
    step_status_of,
    validate_entry,
)

__all__ = [
    "ConcurrentUpdateError",
    "ProjectInputRepository",
    "RunNotFoundError",
    "RunRepository",
    "RunStoreDB",
    "parse_step_status",
    "serialize_step_status",
    "step_status_of",
    "validate_entry",
]
