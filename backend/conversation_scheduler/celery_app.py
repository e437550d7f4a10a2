from celery import Celery
from .core.config import settings


celery_app = Celery(
    "conversation_scheduler",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    task_track_started=True,

    # Ticks are idempotent and guarded by conditional updates, so a lost tick is
    # simply picked up by the next one
    task_acks_late=False,

    # Performance settings
    worker_prefetch_multiplier=1,  # Ticks are short; avoid reserving stale ones
    worker_max_tasks_per_child=1000,  # Restart worker after 1000 tasks (prevent memory leaks)

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour

    # Queue routing
    task_routes={
        'conversation_scheduler.tasks.scheduler_tasks.process_ready_conversations': {'queue': 'high_priority'},
        'conversation_scheduler.tasks.scheduler_tasks.complete_backoff_retry': {'queue': 'high_priority'},
        'conversation_scheduler.tasks.scheduler_tasks.detect_and_recover_stale_conversations': {'queue': 'low_priority'},
    },

    # Default queue for unrouted tasks
    task_default_queue='default',
    task_default_priority=5,
)

# Beat schedule for the scheduler ticks
celery_app.conf.beat_schedule = {
    'process-ready-conversations': {
        'task': 'conversation_scheduler.tasks.scheduler_tasks.process_ready_conversations',
        'schedule': settings.SCHEDULER_TICK_INTERVAL_SECONDS,
        'options': {'expires': settings.SCHEDULER_TICK_INTERVAL_SECONDS * 5},
    },
}

if settings.STALE_DETECTION_ENABLED:
    celery_app.conf.beat_schedule['detect-stale-conversations'] = {
        'task': 'conversation_scheduler.tasks.scheduler_tasks.detect_and_recover_stale_conversations',
        'schedule': settings.STALE_DETECTION_INTERVAL_SECONDS,
    }

# Import tasks explicitly to ensure they're registered
from conversation_scheduler.tasks import scheduler_tasks  # noqa
