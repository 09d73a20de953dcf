"""Admission control for outbound provider calls.

Bounds the number of in-flight calls per provider with an async FIFO
queue. Callers over the bound wait; they are never rejected.
"""

from plinth.core.admission.limiter import AdmissionLimiter
from plinth.core.admission.registry import AdmissionRegistry

__all__ = ["AdmissionLimiter", "AdmissionRegistry"]
