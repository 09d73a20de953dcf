# src/plinth/core/runstore/schema.py
"""SQLAlchemy table definitions for the run store.

Uses SQLAlchemy Core (not ORM) for explicit control over the
conditional writes the orchestrator depends on.
"""

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

# Shared metadata for all tables
metadata = MetaData()

# === Runs ===

runs_table = Table(
    "runs",
    metadata,
    Column("run_id", String(64), primary_key=True),
    Column("project_id", String(128), nullable=False),
    Column("input_version", Integer, nullable=False),
    # Per-project creation order, 1-based; defines "latest" independent of clock resolution
    Column("project_seq", Integer, nullable=False),
    # project_id:input_version:pipeline_version - one row per key, ever
    Column("idempotency_key", String(255), nullable=False, unique=True),
    Column("status", String(32), nullable=False),
    # Optimistic concurrency counter, bumped on every write
    Column("version", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("finished_at", DateTime(timezone=True)),
    Column("error_code", String(64)),
    Column("error_message", Text),
    Column("error_detail", Text),
    Column("output_json", Text),
    # JSON object; step statuses live under "step_status"
    Column("metrics_json", Text, nullable=False, default="{}"),
    UniqueConstraint("project_id", "project_seq", name="uq_runs_project_seq"),
)

# === Project inputs ===

project_inputs_table = Table(
    "project_inputs",
    metadata,
    Column("input_id", String(64), primary_key=True),
    Column("project_id", String(128), nullable=False),
    Column("version", Integer, nullable=False),
    Column("status", String(16), nullable=False),  # draft, final
    Column("input_json", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("project_id", "version", name="uq_project_inputs_version"),
)

Index("ix_project_inputs_project", project_inputs_table.c.project_id, project_inputs_table.c.version)
