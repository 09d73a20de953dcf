"""Execution engine: backoff, resilient call executor and run orchestrator."""
