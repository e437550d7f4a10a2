"""Celery task package initialization."""

from .scheduler_tasks import (
    complete_backoff_retry,
    detect_and_recover_stale_conversations,
    process_ready_conversations,
)

__all__ = [
    "process_ready_conversations",
    "detect_and_recover_stale_conversations",
    "complete_backoff_retry",
]
