"""Persistent per-user task queue and worker engine for attention AI jobs."""

__version__ = "0.1.0"
