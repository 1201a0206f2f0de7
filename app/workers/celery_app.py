"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "inbox_relay",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT_SECONDS,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT_SECONDS,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-message-queue-every-30-seconds": {
        "task": "app.workers.tasks.process_message_queue",
        "schedule": 30.0,
    },
    # אירועים שנשמרו אבל ה-background task לא הספיק לעבד (restart וכו')
    "process-pending-webhook-events-every-minute": {
        "task": "app.workers.tasks.process_pending_webhook_events",
        "schedule": 60.0,
    },
    "process-retryable-webhook-events-every-5-minutes": {
        "task": "app.workers.tasks.process_retryable_webhook_events",
        "schedule": 300.0,
    },
    "check-dead-letter-queue-every-5-minutes": {
        "task": "app.workers.tasks.check_dead_letter_queue",
        "schedule": 300.0,
    },
    "log-queue-stats-every-10-minutes": {
        "task": "app.workers.tasks.log_queue_stats",
        "schedule": 600.0,
    },
    "check-alerts-every-5-minutes": {
        "task": "app.workers.tasks.check_alerts",
        "schedule": 300.0,
    },
    "cleanup-message-queue-daily": {
        "task": "app.workers.tasks.cleanup_message_queue",
        "schedule": crontab(hour="3", minute="0"),
    },
    "cleanup-webhook-events-daily": {
        "task": "app.workers.tasks.cleanup_webhook_events",
        "schedule": crontab(hour="3", minute="30"),
    },
    # רענון page tokens שפגים בשבוע הקרוב
    "refresh-expiring-tokens-daily": {
        "task": "app.workers.tasks.refresh_expiring_tokens",
        "schedule": crontab(hour="2", minute="0"),
    },
}
