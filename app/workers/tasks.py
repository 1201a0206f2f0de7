"""
Celery Tasks — ה-scheduler של התור.

כל משימה תקופתית רצה כ-task נפרד עם event loop משלה (run_async), ועטופה
ב-_isolated: חריגה נרשמת ללוג ומוחזרת כתוצאה, כך שמשימה אחת שנכשלת לא
משפיעה על האחרות ולא מפילה את ה-worker.

כיבוי: signal של worker_shutting_down מדליק דגל שמעבד התור בודק בין
תתי-batch. task_soft_time_limit / task_time_limit מגבילים כל ריצה.
"""
from __future__ import annotations

import asyncio
import threading
from contextlib import contextmanager
from typing import Any, Awaitable, Callable

import httpx
from celery.signals import worker_process_init, worker_shutting_down

from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id, setup_logging
from app.db.database import get_task_session, task_session_factory
from app.db.models.message_queue_item import QueueItemStatus
from app.domain.services import metrics_service, queue_processor, webhook_ingestion
from app.domain.services import token_refresh_service
from app.domain.services.event_store import EventStore
from app.domain.services.graph_api import GraphApiClient
from app.domain.services.message_queue_service import MessageQueueService
from app.domain.services.queue_processor import QueueProcessor
from app.workers.celery_app import celery_app

logger = get_logger(__name__)

_shutdown_requested = threading.Event()


@worker_shutting_down.connect
def _on_worker_shutting_down(sig=None, how=None, exitcode=None, **kwargs) -> None:
    logger.info("Worker shutting down, stopping queue processing", extra_data={"how": how})
    _shutdown_requested.set()


@worker_process_init.connect
def _on_worker_process_init(**kwargs) -> None:
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=f"{settings.APP_NAME}-worker",
    )


def shutdown_requested() -> bool:
    return _shutdown_requested.is_set()


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # ה-client של Redis קשור ל-loop הזה; סוגרים לפני סגירת ה-loop
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def _isolated(task_name: str, coro_factory: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    """הרצת משימה תקופתית; כשלון נרשם ומוחזר, לא נזרק"""
    try:
        return run_async(coro_factory())
    except Exception as e:
        logger.error(
            "Scheduled task failed",
            extra_data={"task": task_name, "error": str(e)},
            exc_info=True,
        )
        return {"error": str(e)}


def _http_timeout() -> float:
    return max(settings.N8N_TIMEOUT_SECONDS, settings.GRAPH_API_TIMEOUT_SECONDS) + 5


# ==================== תור ההודעות ====================

@celery_app.task(name="app.workers.tasks.process_message_queue")
def process_message_queue() -> dict:
    """batch processor: העברה ל-n8n ושליחת תשובות מוכנות ל-Instagram"""

    async def _process() -> dict:
        async with task_session_factory() as session_factory:
            async with httpx.AsyncClient(timeout=_http_timeout()) as http_client:
                processor = QueueProcessor(
                    session_factory,
                    graph=GraphApiClient(http_client=http_client),
                    http_client=http_client,
                    should_stop=shutdown_requested,
                )
                return await processor.process_batch()

    return _isolated("process_message_queue", _process)


@celery_app.task(name="app.workers.tasks.check_dead_letter_queue")
def check_dead_letter_queue() -> dict:

    async def _check() -> dict:
        async with get_task_session() as db:
            return await queue_processor.check_dead_letter_queue(db)

    return _isolated("check_dead_letter_queue", _check)


@celery_app.task(name="app.workers.tasks.log_queue_stats")
def log_queue_stats() -> dict:

    async def _stats() -> dict:
        async with get_task_session() as db:
            return await queue_processor.get_queue_stats(db)

    return _isolated("log_queue_stats", _stats)


@celery_app.task(name="app.workers.tasks.cleanup_message_queue")
def cleanup_message_queue(days: int | None = None) -> dict:
    """מחיקת פריטים סופיים (sent / dead_letter) ישנים"""

    async def _cleanup() -> dict:
        async with get_task_session() as db:
            return await queue_processor.cleanup_old_messages(db, days)

    return _isolated("cleanup_message_queue", _cleanup)


# ==================== webhook events ====================

@celery_app.task(name="app.workers.tasks.process_pending_webhook_events")
def process_pending_webhook_events() -> dict:

    async def _process() -> dict:
        async with task_session_factory() as session_factory:
            return await webhook_ingestion.process_pending_events(session_factory)

    return _isolated("process_pending_webhook_events", _process)


@celery_app.task(name="app.workers.tasks.process_retryable_webhook_events")
def process_retryable_webhook_events() -> dict:

    async def _process() -> dict:
        async with task_session_factory() as session_factory:
            return await webhook_ingestion.process_retryable_events(session_factory)

    return _isolated("process_retryable_webhook_events", _process)


@celery_app.task(name="app.workers.tasks.cleanup_webhook_events")
def cleanup_webhook_events(days: int | None = None) -> dict:
    """ניקוי אירועים שעובדו בהצלחה לפני יותר מ-WEBHOOK_EVENT_RETENTION_DAYS"""
    days = days or settings.WEBHOOK_EVENT_RETENTION_DAYS

    async def _cleanup() -> dict:
        async with get_task_session() as db:
            deleted = await EventStore(db).delete_old_processed(days)
        logger.info(
            "Cleaned up old webhook events",
            extra_data={"deleted": deleted, "cutoff_days": days},
        )
        return {"deleted": deleted}

    return _isolated("cleanup_webhook_events", _cleanup)


# ==================== metrics / alerts ====================

@celery_app.task(name="app.workers.tasks.check_alerts")
def check_alerts() -> dict:
    """snapshot של המונים מול הספים; התראות נרשמות ללוג ולהיסטוריה"""

    async def _check() -> dict:
        async with get_task_session() as db:
            dead_letters = await MessageQueueService(db).count_by_status(QueueItemStatus.DEAD_LETTER)
        summary = await metrics_service.get_summary()
        alerts = metrics_service.check_alerts(summary, dead_letter_count=dead_letters)
        await metrics_service.record_alerts(alerts)
        return {"alerts": len(alerts), "summary": summary}

    return _isolated("check_alerts", _check)


# ==================== tokens ====================

@celery_app.task(name="app.workers.tasks.refresh_expiring_tokens")
def refresh_expiring_tokens() -> dict:

    async def _refresh() -> dict:
        async with get_task_session() as db:
            return await token_refresh_service.refresh_expiring_tokens(db)

    return _isolated("refresh_expiring_tokens", _refresh)
