"""Async worker that claims queued tasks and runs registered handlers."""
