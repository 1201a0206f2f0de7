"""
Webhook Ingestion - הפיכת webhook event שמור לפריט בתור ההודעות.

נקרא משני מקומות:
- ה-endpoint של ה-webhook (BackgroundTasks) מיד אחרי השמירה.
- משימות Celery שאוספות אירועים pending / failed שלא עובדו, ואירועים
  שנתקעו ב-processing כי התהליך נפל אחרי mark_processing.

mark_processing הוא שער: אם שני מסלולים תפסו את אותו אירוע, רק אחד ממשיך.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.logging import get_logger
from app.domain.services import metrics_service
from app.domain.services.event_store import EventStore
from app.domain.services.message_extractor import extract_message_data
from app.domain.services.message_queue_service import MessageQueueService
from app.domain.services.metrics_service import Metric
from app.domain.services.page_service import PageService

logger = get_logger(__name__)

RESULT_QUEUED = "queued"
RESULT_DUPLICATE = "duplicate"
RESULT_IGNORED = "ignored"
RESULT_FAILED = "failed"
RESULT_SKIPPED = "skipped"


async def process_webhook_event(db: AsyncSession, event_id: int) -> str:
    """
    עיבוד אירוע אחד.

    Returns:
        queued / duplicate / ignored / failed / skipped
    """
    events = EventStore(db)
    if not await events.mark_processing(event_id):
        return RESULT_SKIPPED

    try:
        event = await events.get(event_id)
        message = extract_message_data(event.payload)
        if message is None:
            await events.mark_processed(event_id)
            await metrics_service.increment(Metric.WEBHOOKS_PROCESSED)
            return RESULT_IGNORED

        page = await PageService(db).resolve_for_channel(message.conversation_id)
        if page is None:
            # הפריט נוצר בכל זאת; השליחה תיכשל ותיכנס ל-retry עד שהדף יחובר
            logger.warning(
                "No connected page for incoming message",
                extra_data={"channel_id": message.conversation_id, "webhook_event_id": event_id},
            )
        page_id = page.platform_page_id if page is not None else message.conversation_id

        _, created = await MessageQueueService(db).create(
            message, page_id=page_id, webhook_event_id=event_id
        )
        await events.mark_processed(event_id)
        await metrics_service.increment(Metric.WEBHOOKS_PROCESSED)
        if created:
            await metrics_service.increment(Metric.MESSAGES_RECEIVED)
            return RESULT_QUEUED
        return RESULT_DUPLICATE

    except Exception as e:
        await db.rollback()
        error = str(e) or type(e).__name__
        logger.error(
            "Webhook event processing failed",
            extra_data={"webhook_event_id": event_id, "error": error},
            exc_info=True,
        )
        await events.mark_failed(event_id, error)
        event = await events.find_by_id(event_id)
        if event is not None:
            await db.refresh(event)
            if event.retry_count >= settings.WEBHOOK_EVENT_MAX_RETRIES:
                await events.move_to_dead_letter(event_id, error)
        await metrics_service.increment(Metric.WEBHOOKS_FAILED)
        return RESULT_FAILED


async def process_event_in_background(session_factory: async_sessionmaker, event_id: int) -> None:
    """עטיפה ל-BackgroundTasks: session חדש, ושום חריגה לא יוצאת החוצה"""
    try:
        async with session_factory() as db:
            await process_webhook_event(db, event_id)
    except Exception as e:
        # האירוע נשאר שמור; משימת ה-pending תאסוף אותו
        logger.error(
            "Background webhook processing crashed",
            extra_data={"webhook_event_id": event_id, "error": str(e)},
            exc_info=True,
        )


async def _process_events(
    session_factory: async_sessionmaker, event_ids: list[int]
) -> dict[str, Any]:
    summary: dict[str, Any] = {"total": len(event_ids)}
    for event_id in event_ids:
        async with session_factory() as db:
            result = await process_webhook_event(db, event_id)
        summary[result] = summary.get(result, 0) + 1
    return summary


async def requeue_stale_events(session_factory: async_sessionmaker) -> int:
    """אירועים שנתקעו ב-processing (ה-web process נפל אחרי mark_processing)"""
    requeued = 0
    async with session_factory() as db:
        events = EventStore(db)
        stale = await events.find_stale_processing(settings.WEBHOOK_EVENT_PROCESSING_STALE_SECONDS)
        for event in stale:
            if await events.requeue_stale(event, settings.WEBHOOK_EVENT_MAX_RETRIES) is not None:
                requeued += 1
    return requeued


async def process_pending_events(
    session_factory: async_sessionmaker, limit: int | None = None
) -> dict[str, Any]:
    """
    אירועים שנשמרו ולא עובדו (למשל התהליך נפל לפני ה-background task או באמצעו).

    קודם מחזירים ל-pending אירועים שתקועים ב-processing, ואז הם נאספים באותו סבב.
    """
    requeued = await requeue_stale_events(session_factory)
    async with session_factory() as db:
        pending = await EventStore(db).find_pending(limit or settings.WEBHOOK_EVENT_BATCH_SIZE)
    summary = await _process_events(session_factory, [e.id for e in pending])
    summary["requeued"] = requeued
    if pending:
        logger.info("Processed pending webhook events", extra_data=summary)
    return summary


async def process_retryable_events(
    session_factory: async_sessionmaker, limit: int | None = None
) -> dict[str, Any]:
    async with session_factory() as db:
        failed = await EventStore(db).find_retryable(
            settings.WEBHOOK_EVENT_MAX_RETRIES,
            limit or settings.WEBHOOK_EVENT_BATCH_SIZE,
        )
    summary = await _process_events(session_factory, [e.id for e in failed])
    if failed:
        logger.info("Retried failed webhook events", extra_data=summary)
    return summary
