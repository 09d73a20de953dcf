"""Common helper functions for run store modules."""

import json
import uuid
from datetime import UTC, datetime
from typing import Any


def now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_id() -> str:
    """Generate a unique ID (UUID4 hex)."""
    return uuid.uuid4().hex


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def dumps(value: Any) -> str:
    """Deterministic JSON for stored blobs."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))
