"""ProjectInputRepository: versioned upstream inputs per project.

Versions are allocated per project starting at 1. The run a project gets
is keyed on the version returned by latest(): the highest final version
if any exists, else the highest draft.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from plinth.contracts import InputStatus, ProjectInput
from plinth.core.runstore._helpers import dumps, generate_id, now
from plinth.core.runstore.database import RunStoreDB
from plinth.core.runstore.repositories import ProjectInputLoader
from plinth.core.runstore.schema import project_inputs_table

logger = structlog.get_logger(__name__)


class ProjectInputRepository:
    """Repository for ProjectInput records."""

    def __init__(
        self,
        db: RunStoreDB,
        *,
        clock: Callable[[], datetime] = now,
        max_write_attempts: int = 20,
    ) -> None:
        self._db = db
        self._clock = clock
        self._max_write_attempts = max_write_attempts
        self._loader = ProjectInputLoader()

    def add(
        self,
        project_id: str,
        payload: dict[str, Any],
        status: InputStatus = InputStatus.DRAFT,
    ) -> ProjectInput:
        """Store a new input version for a project.

        Concurrent adds for the same project are serialized by the
        (project_id, version) unique constraint; the loser retries with
        the next version.
        """
        for _ in range(self._max_write_attempts):
            input_id = generate_id()
            try:
                with self._db.connection() as conn:
                    current = conn.execute(
                        select(func.max(project_inputs_table.c.version)).where(project_inputs_table.c.project_id == project_id)
                    ).scalar()
                    version = (current or 0) + 1
                    conn.execute(
                        project_inputs_table.insert().values(
                            input_id=input_id,
                            project_id=project_id,
                            version=version,
                            status=status.value,
                            input_json=dumps(payload),
                            created_at=self._clock(),
                        )
                    )
            except IntegrityError:
                logger.debug("Input version already taken, retrying", project_id=project_id)
                continue
            logger.info("Stored project input", project_id=project_id, version=version, status=status.value)
            return self._require(input_id)
        raise RuntimeError(f"Could not allocate an input version for project {project_id}")

    def _require(self, input_id: str) -> ProjectInput:
        query = select(project_inputs_table).where(project_inputs_table.c.input_id == input_id)
        with self._db.connection() as conn:
            row = conn.execute(query).fetchone()
        if row is None:
            raise LookupError(f"Project input not found: {input_id}")
        return self._loader.load(row)

    def latest(self, project_id: str) -> ProjectInput | None:
        """Highest final version, else highest draft, else None."""
        for status in (InputStatus.FINAL, InputStatus.DRAFT):
            query = (
                select(project_inputs_table)
                .where(project_inputs_table.c.project_id == project_id)
                .where(project_inputs_table.c.status == status.value)
                .order_by(project_inputs_table.c.version.desc())
                .limit(1)
            )
            with self._db.connection() as conn:
                row = conn.execute(query).fetchone()
            if row is not None:
                return self._loader.load(row)
        return None

    def list_for_project(self, project_id: str) -> list[ProjectInput]:
        """All input versions for a project, oldest first."""
        query = (
            select(project_inputs_table)
            .where(project_inputs_table.c.project_id == project_id)
            .order_by(project_inputs_table.c.version)
        )
        with self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [self._loader.load(row) for row in rows]
