"""Durable per-user task queue backed by SQLite.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The tracker runs as a single process next to one SQLite file. The queue
needs per-user concurrency caps, a dedupe key that allows at most one open
task per user and type, and heartbeat-based crash recovery. A broker would
add an operational dependency and still leave all of that as custom logic,
so the claim and outcome transitions live here as conditional UPDATEs.
"""
