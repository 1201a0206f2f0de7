"""
Queue Processor - עיבוד batch של תור ההודעות.

כל ריצה (Celery beat, כל 30 שניות):
1. פריטים שנתקעו ב-processing מעבר ל-QUEUE_PROCESSING_STALE_SECONDS
   חוזרים למסלול ה-retry.
2. שליפת פריטים מוכנים: pending/failed שהגיע זמנם + ready_to_send.
3. עיבוד בתתי-batch של QUEUE_SUB_BATCH_SIZE במקביל. כל פריט מקבל
   session משלו ו-timeout משלו; כשלון של פריט אחד לא משפיע על האחרים.
4. בין תתי-batch בודקים should_stop (worker בכיבוי).

ניתוב פריט:
- יש ai_response ו-external_status == "success" → שליחה ל-Instagram.
- אחרת → העברה ל-n8n.
"""
from __future__ import annotations

import asyncio
from datetime import timezone
from typing import Any, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import GraphApiError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.message_queue_item import QueueItem, QueueItemStatus
from app.domain.services import metrics_service
from app.domain.services.graph_api import GraphApiClient
from app.domain.services.message_extractor import MessageData
from app.domain.services.message_queue_service import MessageQueueService
from app.domain.services.metrics_service import Metric
from app.domain.services.page_service import PageService
from app.domain.services.processor_client import ExternalProcessorClient

logger = get_logger(__name__)

PROCESSOR_SUCCESS_STATUS = "success"

# תוצאות עיבוד פריט
RESULT_FORWARDED = "forwarded"
RESULT_SENT = "sent"
RESULT_FAILED = "failed"
RESULT_SKIPPED = "skipped"

_FORWARD_FROM_STATUSES = (QueueItemStatus.PENDING, QueueItemStatus.FAILED)


def is_ready_for_delivery(item: QueueItem) -> bool:
    """האם כבר יש תשובה מוצלחת מ-n8n שרק צריך לשלוח"""
    return bool(item.ai_response) and item.external_status == PROCESSOR_SUCCESS_STATUS


def _message_data(item: QueueItem) -> MessageData:
    return MessageData(
        conversation_id=item.external_conversation_id,
        sender_id=item.sender_id,
        recipient_id=item.recipient_id,
        message_text=item.message_text,
        message_id=item.external_message_id,
        timestamp=(
            int(item.created_at.replace(tzinfo=timezone.utc).timestamp() * 1000)
            if item.created_at else None
        ),
    )


def _chunks(items: list[int], size: int) -> list[list[int]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class QueueProcessor:
    """
    מעבד התור.

    Args:
        session_factory: async_sessionmaker - כל פריט מקבל session חדש ממנו
        graph: לקוח Graph API משותף לכל הפריטים ב-batch
        http_client: לקוח httpx משותף לקריאות ל-n8n (אופציונלי)
        should_stop: נבדק בין תתי-batch; True → עוצרים ומחזירים את מה שעובד
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        graph: GraphApiClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._graph = graph or GraphApiClient(http_client=http_client)
        self._http_client = http_client
        self._should_stop = should_stop or (lambda: False)

    # ==================== פריט בודד ====================

    async def _fail(self, queue: MessageQueueService, item_id: int, error: str) -> None:
        item = await queue.record_failure(item_id, error)
        if item is None:
            return
        await metrics_service.increment(Metric.MESSAGES_FAILED)
        if item.status == QueueItemStatus.DEAD_LETTER:
            await metrics_service.increment(Metric.DEAD_LETTER_COUNT)

    async def _forward(self, db: AsyncSession, queue: MessageQueueService, item: QueueItem) -> str:
        # שער "בטיפול": רק worker אחד מעביר את הפריט ל-processing
        if not await queue.claim(item.id, _FORWARD_FROM_STATUSES, QueueItemStatus.PROCESSING):
            logger.debug("Queue item already claimed", extra_data={"queue_item_id": item.id})
            return RESULT_SKIPPED

        processor = ExternalProcessorClient(queue, http_client=self._http_client)
        forwarded = await processor.forward(_message_data(item), item.id)
        if not forwarded:
            await metrics_service.increment(Metric.PROCESSOR_ERRORS)
            await self._fail(queue, item.id, "Failed to forward message to n8n")
            return RESULT_FAILED

        await metrics_service.increment(Metric.MESSAGES_FORWARDED)
        return RESULT_FORWARDED

    async def _deliver(self, db: AsyncSession, queue: MessageQueueService, item: QueueItem) -> str:
        # optimistic claim: הסטטוס לא משתנה, updated_at משמש כגרסה
        if not await queue.touch(item.id, item.status, item.updated_at):
            logger.debug("Queue item already claimed", extra_data={"queue_item_id": item.id})
            return RESULT_SKIPPED

        page = await PageService(db).resolve_for_channel(item.page_id)
        if page is None or not page.page_access_token:
            await self._fail(queue, item.id, f"Page not found or missing token: {item.page_id}")
            return RESULT_FAILED

        try:
            result = await self._graph.send_message(
                item.sender_id, item.ai_response, page.page_access_token,
                retry_rate_limited=False,
            )
        except GraphApiError as e:
            await metrics_service.increment(Metric.PLATFORM_ERRORS)
            classification = e.classification
            await self._fail(
                queue,
                item.id,
                f"{classification.type.value}: {classification.message}",
            )
            if classification.requires_remediation:
                logger.error(
                    "Instagram delivery requires remediation",
                    extra_data={
                        "queue_item_id": item.id,
                        "page_id": item.page_id,
                        "error_type": classification.type.value,
                        "suggestion": classification.suggestion,
                    },
                )
            return RESULT_FAILED

        now = utcnow()
        await queue.update_status(
            item.id,
            QueueItemStatus.SENT,
            sent_to_platform_at=now,
            platform_message_id=result.get("message_id"),
            last_error=None,
        )
        await metrics_service.increment(Metric.MESSAGES_PROCESSED)
        if item.created_at is not None:
            await metrics_service.record_response_time(
                (now - item.created_at).total_seconds() * 1000
            )
        logger.info(
            "Reply delivered to Instagram",
            extra_data={"queue_item_id": item.id, "platform_message_id": result.get("message_id")},
        )
        return RESULT_SENT

    async def process_item(self, item_id: int) -> str:
        """
        עיבוד פריט אחד ב-session משלו.

        Returns:
            forwarded / sent / failed / skipped
        """
        async with self._session_factory() as db:
            queue = MessageQueueService(db)
            item = await queue.find_by_id(item_id)
            if item is None or item.is_terminal:
                return RESULT_SKIPPED

            if item.status == QueueItemStatus.FAILED:
                await metrics_service.increment(Metric.MESSAGES_RETRIED)

            try:
                if is_ready_for_delivery(item):
                    return await self._deliver(db, queue, item)
                return await self._forward(db, queue, item)
            except Exception as e:
                logger.error(
                    "Queue item processing error",
                    extra_data={"queue_item_id": item_id, "error": str(e)},
                    exc_info=True,
                )
                await db.rollback()
                await self._fail(queue, item_id, str(e) or type(e).__name__)
                return RESULT_FAILED

    async def _process_with_timeout(self, item_id: int) -> str:
        try:
            return await asyncio.wait_for(
                self.process_item(item_id),
                timeout=settings.QUEUE_ITEM_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Queue item processing timed out",
                extra_data={
                    "queue_item_id": item_id,
                    "timeout_seconds": settings.QUEUE_ITEM_TIMEOUT_SECONDS,
                },
            )
            # ה-session של הניסיון שבוטל לא שמיש, פותחים חדש
            async with self._session_factory() as db:
                await self._fail(MessageQueueService(db), item_id, "Processing timeout")
            return RESULT_FAILED

    # ==================== batch ====================

    async def requeue_stale_processing(self) -> int:
        """פריטים שתקועים ב-processing (callback לא חזר / worker נפל) → כשלון רגיל"""
        async with self._session_factory() as db:
            queue = MessageQueueService(db)
            stale = await queue.find_stale_processing(settings.QUEUE_PROCESSING_STALE_SECONDS)
            for item in stale:
                await self._fail(
                    queue,
                    item.id,
                    f"No callback within {settings.QUEUE_PROCESSING_STALE_SECONDS}s",
                )
        if stale:
            logger.warning(
                "Requeued stale processing items",
                extra_data={"count": len(stale), "queue_item_ids": [i.id for i in stale]},
            )
        return len(stale)

    async def process_batch(self) -> dict[str, Any]:
        """
        Returns:
            {"total", "processed", "failed", "skipped", "requeued", "stopped"}
        """
        requeued = await self.requeue_stale_processing()

        async with self._session_factory() as db:
            queue = MessageQueueService(db)
            ready = await queue.get_ready_for_retry(settings.QUEUE_BATCH_LIMIT)
            to_send = await queue.get_ready_to_send(settings.QUEUE_BATCH_LIMIT)

        item_ids = list(dict.fromkeys([i.id for i in ready] + [i.id for i in to_send]))
        summary: dict[str, Any] = {
            "total": len(item_ids),
            "processed": 0,
            "failed": 0,
            "skipped": 0,
            "requeued": requeued,
            "stopped": False,
        }
        if not item_ids:
            return summary

        for chunk in _chunks(item_ids, settings.QUEUE_SUB_BATCH_SIZE):
            if self._should_stop():
                summary["stopped"] = True
                logger.info("Queue processing stopped early (shutdown)", extra_data=summary)
                break

            results = await asyncio.gather(
                *(self._process_with_timeout(item_id) for item_id in chunk),
                return_exceptions=True,
            )
            for item_id, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    logger.error(
                        "Unexpected error in queue item task",
                        extra_data={"queue_item_id": item_id, "error": str(result)},
                    )
                    summary["failed"] += 1
                elif result == RESULT_FAILED:
                    summary["failed"] += 1
                elif result == RESULT_SKIPPED:
                    summary["skipped"] += 1
                else:
                    summary["processed"] += 1

        logger.info("Queue batch processed", extra_data=summary)
        return summary


# ==================== משימות תחזוקה ====================

async def check_dead_letter_queue(db: AsyncSession, limit: int = 100) -> dict[str, Any]:
    """סקירת dead letter: ספירה + לוג לפריטים אחרונים (לחקירה ידנית)"""
    queue = MessageQueueService(db)
    count = await queue.count_by_status(QueueItemStatus.DEAD_LETTER)
    if count:
        items = await queue.find_by_status(QueueItemStatus.DEAD_LETTER, limit=limit)
        logger.warning(
            "Dead letter queue not empty",
            extra_data={
                "count": count,
                "items": [
                    {
                        "queue_item_id": item.id,
                        "external_message_id": item.external_message_id,
                        "retry_count": item.retry_count,
                        "last_error": item.last_error,
                    }
                    for item in items
                ],
            },
        )
    return {"dead_letter_count": count}


async def cleanup_old_messages(db: AsyncSession, days: int | None = None) -> dict[str, int]:
    days = days or settings.MESSAGE_QUEUE_RETENTION_DAYS
    deleted = await MessageQueueService(db).delete_older_than(days)
    return {"deleted": deleted}


async def get_queue_stats(db: AsyncSession) -> dict[str, Any]:
    stats = await MessageQueueService(db).get_stats()
    logger.info("Queue stats", extra_data=stats)
    return stats
