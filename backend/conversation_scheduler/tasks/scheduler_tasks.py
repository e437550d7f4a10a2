"""Celery tasks driving the scheduler ticks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, TypeVar

import redis
from redis.exceptions import LockError

from ..celery_app import celery_app
from ..core import database
from ..core.config import settings
from ..services.conversation_events import conversation_events_service
from ..services.message_recovery import message_recovery_service
from ..services.processing_pipeline import ClaimingPipeline, load_handler
from ..services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

T = TypeVar("T")

TICK_LOCK_TIMEOUT_SECONDS = 300
PROCESSING_TICK_LOCK = "conversation_scheduler:lock:processing_tick"
STALE_SWEEP_LOCK = "conversation_scheduler:lock:stale_sweep"

_redis_client: Optional[redis.Redis] = None
_scheduler: Optional[SchedulerService] = None


def _run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a synchronous Celery task without leaking loops."""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        try:
            loop.run_until_complete(loop.shutdown_asyncgens())
        except (RuntimeError, ValueError):
            # Loop might already be closed or not started; ignore to keep cleanup robust
            pass
        finally:
            asyncio.set_event_loop(None)
            loop.close()


async def _with_engine_cleanup(work: Callable[[], Awaitable[T]]) -> T:
    # Pooled connections are bound to the loop that opened them
    try:
        return await work()
    finally:
        await database.async_engine.dispose()


def _get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL)
    return _redis_client


def _get_scheduler() -> SchedulerService:
    global _scheduler
    if _scheduler is None:
        pipeline = None
        if settings.PROCESSING_HANDLER:
            pipeline = ClaimingPipeline(load_handler(settings.PROCESSING_HANDLER))
        else:
            logger.warning("PROCESSING_HANDLER is not configured; processing ticks will be skipped")
        _scheduler = SchedulerService(pipeline=pipeline, retry_scheduler=_enqueue_backoff_retry)
    return _scheduler


def _enqueue_backoff_retry(conversation_id: int, backoff_ms: int) -> None:
    complete_backoff_retry.apply_async(
        args=[conversation_id],
        countdown=backoff_ms / 1000,
    )
    logger.debug(
        f"Scheduled backoff retry for conversation {conversation_id} in {backoff_ms}ms",
        extra={"conversation_id": conversation_id, "backoff_ms": backoff_ms},
    )


def _run_exclusive(lock_name: str, job: str, work: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    """Run ``work`` unless another worker holds the tick lock."""
    lock = _get_redis().lock(lock_name, timeout=TICK_LOCK_TIMEOUT_SECONDS, blocking=False)
    if not lock.acquire(blocking=False):
        logger.debug(f"{job} already running elsewhere, skipping", extra={"job": job})
        return {"status": "skipped", "reason": "already_running"}

    try:
        return work()
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning(f"{job} lock expired before release", extra={"job": job})


async def _sweep_with_events() -> list:
    await conversation_events_service.initialize()
    try:
        return await _get_scheduler().run_stale_sweep()
    finally:
        await conversation_events_service.close()


@celery_app.task(name="conversation_scheduler.tasks.scheduler_tasks.process_ready_conversations")
def process_ready_conversations() -> Dict[str, Any]:
    """Claim and process conversations whose debounce window has passed."""

    def work() -> Dict[str, Any]:
        processed = _run_sync(_with_engine_cleanup(_get_scheduler().run_processing_cycle))
        return {"status": "completed", "processed": processed}

    return _run_exclusive(PROCESSING_TICK_LOCK, "processing_tick", work)


@celery_app.task(name="conversation_scheduler.tasks.scheduler_tasks.detect_and_recover_stale_conversations")
def detect_and_recover_stale_conversations() -> Dict[str, Any]:
    """
    Run one stale sweep: detect stuck conversations and remediate each.

    Backoff retries returned by the sweep are enqueued as countdown tasks.
    """

    def work() -> Dict[str, Any]:
        results = _run_sync(_with_engine_cleanup(_sweep_with_events))
        return {
            "status": "completed",
            "recovered": sum(1 for result in results if result.success),
            "results": [result.to_dict() for result in results],
        }

    return _run_exclusive(STALE_SWEEP_LOCK, "stale_sweep", work)


@celery_app.task(name="conversation_scheduler.tasks.scheduler_tasks.complete_backoff_retry")
def complete_backoff_retry(conversation_id: int) -> Dict[str, Any]:
    """Requeue a conversation once its backoff window has elapsed."""

    async def work():
        return await message_recovery_service.complete_backoff_retry(conversation_id)

    result = _run_sync(_with_engine_cleanup(work))
    return {"conversation_id": conversation_id, **result.to_dict()}
