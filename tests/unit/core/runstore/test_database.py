"""Tests for RunStoreDB setup and schema validation."""

from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect, text

from plinth.contracts import SchemaMismatchError
from plinth.core.runstore import RunStoreDB


def test_in_memory_creates_tables() -> None:
    with RunStoreDB.in_memory() as db:
        tables = set(inspect(db.engine).get_table_names())

    assert {"runs", "project_inputs"} <= tables


def test_file_database_uses_wal(tmp_path: Path) -> None:
    db = RunStoreDB(f"sqlite:///{tmp_path / 'state' / 'runs.db'}")
    try:
        with db.connection() as conn:
            mode = conn.execute(text("PRAGMA journal_mode")).scalar()
            timeout = conn.execute(text("PRAGMA busy_timeout")).scalar()
    finally:
        db.close()

    assert mode == "wal"
    assert timeout == 5000
    assert (tmp_path / "state" / "runs.db").exists()


def test_outdated_schema_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "old.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE runs (run_id TEXT PRIMARY KEY, idempotency_key TEXT, metrics_json TEXT)"))
    engine.dispose()

    with pytest.raises(SchemaMismatchError, match=r"runs\.version"):
        RunStoreDB.from_url(f"sqlite:///{path}")


def test_runs_table_without_project_sequence_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "pre_seq.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(
            text("CREATE TABLE runs (run_id TEXT PRIMARY KEY, idempotency_key TEXT, metrics_json TEXT, version INTEGER)")
        )
    engine.dispose()

    with pytest.raises(SchemaMismatchError, match=r"Missing columns: runs\.project_seq\n"):
        RunStoreDB.from_url(f"sqlite:///{path}")


def test_existing_current_schema_is_accepted(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'runs.db'}"
    RunStoreDB(url).close()

    reopened = RunStoreDB.from_url(url)
    reopened.close()


def test_connection_rolls_back_on_error(db: RunStoreDB) -> None:
    with pytest.raises(RuntimeError), db.connection() as conn:
        conn.execute(
            text(
                "INSERT INTO project_inputs (input_id, project_id, version, status, input_json, created_at) "
                "VALUES ('i1', 'p1', 1, 'draft', '{}', '2026-01-01 00:00:00')"
            )
        )
        raise RuntimeError("abort")

    with db.connection() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM project_inputs")).scalar()
    assert count == 0


def test_closed_database_raises() -> None:
    db = RunStoreDB.in_memory()
    db.close()

    with pytest.raises(RuntimeError, match="not initialized"):
        _ = db.engine
