"""Registry for managing admission limiters per provider."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING

from plinth.core.admission.limiter import AdmissionLimiter

if TYPE_CHECKING:
    from plinth.core.config import PlinthSettings

DEFAULT_MAX_IN_FLIGHT = 4


class AdmissionRegistry:
    """Creates limiters on demand and reuses them per provider.

    Owned by process bootstrap and passed by reference to whoever makes
    outbound calls; there is no module-level instance.

    Example:
        registry = AdmissionRegistry.from_settings(settings)
        limiter = registry.get_limiter("search")
    """

    def __init__(
        self,
        limits: Mapping[str, int] | None = None,
        *,
        default_max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
    ) -> None:
        """Initialize registry.

        Args:
            limits: Per-provider concurrency bounds
            default_max_in_flight: Bound for providers not listed in limits
        """
        if default_max_in_flight <= 0:
            raise ValueError(f"default_max_in_flight must be positive, got {default_max_in_flight}")
        self._limits = dict(limits or {})
        self._default = default_max_in_flight
        self._limiters: dict[str, AdmissionLimiter] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: PlinthSettings) -> AdmissionRegistry:
        return cls(
            {
                "generation": settings.generation.max_concurrency,
                "search": settings.search.max_concurrency,
            }
        )

    def get_limiter(self, provider: str) -> AdmissionLimiter:
        """Get or create the limiter for a provider."""
        with self._lock:
            if provider not in self._limiters:
                self._limiters[provider] = AdmissionLimiter(
                    provider,
                    max_in_flight=self._limits.get(provider, self._default),
                )
            return self._limiters[provider]

    def reset_all(self) -> None:
        """Drop all limiters (for testing)."""
        with self._lock:
            self._limiters.clear()
