# src/plinth/engine/backoff.py
"""Backoff policy: retry index -> delay with symmetric jitter.

Fixed base schedule instead of exponential growth. Retry index 0 is the
wait before the second attempt. Beyond the end of the schedule the last
base value is reused.

    delay = max(floor, base * (1 + jitter_ratio * u)),  u ~ U(-1, 1)
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from plinth.core.config import RetrySettings

DEFAULT_SCHEDULE_MS: tuple[float, ...] = (300.0, 800.0, 1600.0)


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay schedule for retries.

    Pure apart from the jitter source; pass a seeded ``random.Random`` to
    make delays reproducible.

    Attributes:
        schedule_ms: Base delay per retry index (milliseconds)
        jitter_ratio: Symmetric jitter as a fraction of base (0.25 = +/-25%)
        floor_ms: Lower bound on the returned delay
    """

    schedule_ms: tuple[float, ...] = DEFAULT_SCHEDULE_MS
    jitter_ratio: float = 0.25
    floor_ms: float = 50.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.schedule_ms:
            raise ValueError("schedule_ms must not be empty")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError(f"jitter_ratio must be in [0, 1), got {self.jitter_ratio}")
        if self.floor_ms <= 0:
            raise ValueError(f"floor_ms must be positive, got {self.floor_ms}")

    @classmethod
    def from_settings(cls, settings: RetrySettings, *, rng: random.Random | None = None) -> BackoffPolicy:
        """Build from validated RetrySettings."""
        return cls(
            schedule_ms=tuple(settings.schedule_ms),
            jitter_ratio=settings.jitter_ratio,
            floor_ms=settings.floor_ms,
            rng=rng or random.Random(),
        )

    def base_delay_ms(self, attempt: int) -> float:
        """Un-jittered delay for a retry index."""
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        return self.schedule_ms[min(attempt, len(self.schedule_ms) - 1)]

    def delay_ms(self, attempt: int) -> float:
        """Jittered delay in milliseconds for a retry index."""
        base = self.base_delay_ms(attempt)
        jitter = base * self.jitter_ratio * self.rng.uniform(-1.0, 1.0)
        return max(self.floor_ms, base + jitter)

    def delay(self, attempt: int) -> float:
        """Jittered delay in seconds (for asyncio.sleep)."""
        return self.delay_ms(attempt) / 1000.0
