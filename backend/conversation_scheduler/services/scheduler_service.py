"""
Scheduler driver: the processing tick and the stale sweep.

Both ticks are plain coroutines so they can run on the in-process asyncio
loops started by :meth:`SchedulerService.start` or from the Celery beat tasks.
Neither tick ever raises; failures are logged and the next tick proceeds.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Set

from ..core.config import settings
from ..core.logging_config import LoggerMixin
from ..models.conversation import Conversation
from .conversation_store import ConversationStore, conversation_store
from .message_recovery import (
    MessageRecoveryService,
    RecoveryAction,
    RecoveryResult,
    message_recovery_service,
)
from .processing_pipeline import ClaimingPipeline, ProcessingPipeline, load_handler
from .stale_detector import (
    StaleMessageDetectorService,
    group_by_reason,
    stale_message_detector,
)

# Called with (conversation_id, backoff_ms) to arrange a deferred requeue
RetryScheduler = Callable[[int, int], None]


class SchedulerService(LoggerMixin):
    def __init__(
        self,
        pipeline: Optional[ProcessingPipeline] = None,
        store: Optional[ConversationStore] = None,
        detector: Optional[StaleMessageDetectorService] = None,
        recovery: Optional[MessageRecoveryService] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        batch_size: Optional[int] = None,
        tick_interval_seconds: Optional[float] = None,
        stale_interval_seconds: Optional[float] = None,
        stale_detection_enabled: Optional[bool] = None,
        dry_run: Optional[bool] = None
    ) -> None:
        self.pipeline = pipeline
        self.store = store or conversation_store
        self.detector = detector or stale_message_detector
        self.recovery = recovery or message_recovery_service
        self.retry_scheduler = retry_scheduler
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        self.tick_interval_seconds = tick_interval_seconds or settings.SCHEDULER_TICK_INTERVAL_SECONDS
        self.stale_interval_seconds = stale_interval_seconds or settings.STALE_DETECTION_INTERVAL_SECONDS
        self.stale_detection_enabled = (
            settings.STALE_DETECTION_ENABLED if stale_detection_enabled is None else stale_detection_enabled
        )
        self.dry_run = settings.STALE_RECOVERY_DRY_RUN if dry_run is None else dry_run

        self._processing_running = False
        self._sweep_running = False
        self._loops: List[asyncio.Task] = []
        self._retry_tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return bool(self._loops)

    async def run_processing_cycle(self) -> int:
        """
        Claim and process every conversation that is ready.

        Returns the number of conversations the pipeline handled.
        """
        if self._processing_running:
            self.log_debug("Processing tick still running, skipping")
            return 0

        if self.pipeline is None:
            self.log_debug("No processing pipeline configured, skipping processing tick")
            return 0

        self._processing_running = True
        try:
            conversations = await self.store.find_ready_for_processing(limit=self.batch_size)
            if not conversations:
                return 0

            outcomes = await asyncio.gather(
                *(self._process_one(conversation) for conversation in conversations)
            )
            processed = sum(1 for outcome in outcomes if outcome)
            self.log_debug(
                f"Processing tick handled {processed}/{len(conversations)} ready conversations"
            )
            return processed
        except Exception as e:
            self.logger.error(f"Processing tick failed: {e}", exc_info=True)
            return 0
        finally:
            self._processing_running = False

    async def _process_one(self, conversation: Conversation) -> bool:
        try:
            return await self.pipeline.process(conversation)
        except Exception as e:
            self.log_error(
                f"Error processing conversation {conversation.id}: {e}",
                conversation_id=conversation.id,
            )
            return False

    async def run_stale_sweep(self) -> List[RecoveryResult]:
        """Detect stale conversations and recover each of them concurrently."""
        if self._sweep_running:
            self.log_debug("Stale sweep still running, skipping")
            return []

        self._sweep_running = True
        try:
            stale_conversations = await self.detector.detect_stale_conversations()
            if not stale_conversations:
                return []

            self.log_warning(
                f"Found {len(stale_conversations)} stale conversations",
                job="stale_sweep",
            )

            results = await asyncio.gather(
                *(self.recovery.recover(stale, dry_run=self.dry_run) for stale in stale_conversations)
            )

            for stale, result in zip(stale_conversations, results):
                if result.action == RecoveryAction.RETRY_WITH_BACKOFF and result.backoff_ms is not None:
                    self.schedule_backoff_retry(stale.conversation_id, result.backoff_ms)

            succeeded = sum(1 for result in results if result.success)
            self.log_info(
                f"Stale sweep recovered {succeeded}/{len(results)} conversations "
                f"{group_by_reason(stale_conversations)}",
                job="stale_sweep",
            )
            return list(results)
        except Exception as e:
            self.logger.error(f"Stale sweep failed: {e}", exc_info=True)
            return []
        finally:
            self._sweep_running = False

    def schedule_backoff_retry(self, conversation_id: int, backoff_ms: int) -> None:
        if self.retry_scheduler is not None:
            self.retry_scheduler(conversation_id, backoff_ms)
            return

        task = asyncio.create_task(self._complete_backoff_after(conversation_id, backoff_ms))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _complete_backoff_after(self, conversation_id: int, backoff_ms: int) -> None:
        await asyncio.sleep(backoff_ms / 1000)
        await self.recovery.complete_backoff_retry(conversation_id)

    async def _run_periodic(
        self,
        name: str,
        tick: Callable[[], Awaitable[object]],
        interval_seconds: float
    ) -> None:
        self.log_info(f"Started {name} loop (every {interval_seconds}s)", job=name)
        while True:
            await tick()
            await asyncio.sleep(interval_seconds)

    def start(self) -> None:
        """Start the periodic loops on the running event loop."""
        if self._loops:
            return

        if self.pipeline is not None:
            self._loops.append(asyncio.create_task(
                self._run_periodic("processing", self.run_processing_cycle, self.tick_interval_seconds)
            ))
        if self.stale_detection_enabled:
            self._loops.append(asyncio.create_task(
                self._run_periodic("stale_sweep", self.run_stale_sweep, self.stale_interval_seconds)
            ))

    async def stop(self) -> None:
        tasks = [*self._loops, *self._retry_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._retry_tasks.clear()
        self.log_info("Scheduler stopped")


def build_scheduler_service(
    handler_path: Optional[str] = None,
    retry_scheduler: Optional[RetryScheduler] = None
) -> SchedulerService:
    """Wire a scheduler around the configured ``PROCESSING_HANDLER``."""
    handler_path = handler_path or settings.PROCESSING_HANDLER
    if not handler_path:
        raise ValueError("PROCESSING_HANDLER is not configured")

    pipeline = ClaimingPipeline(load_handler(handler_path))
    return SchedulerService(pipeline, retry_scheduler=retry_scheduler)
