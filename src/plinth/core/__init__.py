"""Core infrastructure: configuration, logging, admission control, run store."""
