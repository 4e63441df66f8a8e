"""Celery tasks."""

from app.tasks.queue import cleanup_completed_messages, release_stale_messages

__all__ = ["cleanup_completed_messages", "release_stale_messages"]
