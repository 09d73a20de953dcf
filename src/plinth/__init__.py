"""Plinth - resilient execution core for multi-stage analysis runs.

Durable run/step state machine over a SQL store, layered on a
resilient call executor shared by every outbound provider call.
"""

__version__ = "0.1.0"
