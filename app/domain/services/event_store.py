"""
Event Store - רישום עמיד של webhooks נכנסים ומחזור החיים שלהם.

כל שינוי סטטוס הוא UPDATE יחיד ואטומי. mark_processing הוא UPDATE מותנה
(WHERE status IN ...): אם שני schedulers שלפו את אותו batch, רק אחד מהם
"זוכה" באירוע והשני מדלג עליו. אין נעילות ברמת האפליקציה.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidQueueStateError, ErrorCode, WebhookEventNotFoundError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus

logger = get_logger(__name__)

# מאילו סטטוסים מותר לתפוס אירוע לעיבוד
_CLAIMABLE_STATUSES = (WebhookEventStatus.PENDING, WebhookEventStatus.FAILED)
# מאילו סטטוסים מותר retry ידני
_MANUAL_RETRY_STATUSES = (WebhookEventStatus.FAILED, WebhookEventStatus.DEAD_LETTER)


class EventStore:
    """Repository + state transitions עבור WebhookEvent"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        event_type: str,
        payload: dict[str, Any],
        page_id: str | None = None,
    ) -> WebhookEvent:
        event = WebhookEvent(
            page_id=page_id,
            event_type=event_type,
            payload=payload,
            status=WebhookEventStatus.PENDING,
            retry_count=0,
            received_at=utcnow(),
        )
        self.db.add(event)
        await self.db.commit()
        await self.db.refresh(event)
        return event

    async def find_by_id(self, event_id: int) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent).where(WebhookEvent.id == event_id)
        )
        return result.scalar_one_or_none()

    async def get(self, event_id: int) -> WebhookEvent:
        """כמו find_by_id, אבל זורק WebhookEventNotFoundError"""
        event = await self.find_by_id(event_id)
        if event is None:
            raise WebhookEventNotFoundError(event_id)
        return event

    async def find_by_page_id(self, page_id: str, limit: int = 50) -> list[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.page_id == page_id)
            .order_by(WebhookEvent.received_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_all(
        self,
        *,
        status: WebhookEventStatus | None = None,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookEvent], int]:
        """רשימה מסוננת + סה"כ (לדפדוף)"""
        conditions = []
        if status is not None:
            conditions.append(WebhookEvent.status == status)
        if event_type:
            conditions.append(WebhookEvent.event_type == event_type)

        total = await self.db.scalar(
            select(func.count()).select_from(WebhookEvent).where(*conditions)
        )
        result = await self.db.execute(
            select(WebhookEvent)
            .where(*conditions)
            .order_by(WebhookEvent.received_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def find_pending(self, limit: int = 10) -> list[WebhookEvent]:
        """אירועים ממתינים, הישן ביותר קודם"""
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status == WebhookEventStatus.PENDING)
            .order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_retryable(self, max_retries: int, limit: int = 10) -> list[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED,
                WebhookEvent.retry_count < max_retries,
            )
            .order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_stale_processing(self, older_than_seconds: float, limit: int = 100) -> list[WebhookEvent]:
        """אירועים שנתפסו לעיבוד ולא הסתיימו (התהליך נפל באמצע)"""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.PROCESSING,
                WebhookEvent.processing_started_at < cutoff,
            )
            .order_by(WebhookEvent.processing_started_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _update(self, event_id: int, *conditions, **values) -> bool:
        result = await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_processing(self, event_id: int) -> bool:
        """
        תפיסת אירוע לעיבוד.

        Returns:
            False אם האירוע כבר נתפס (או לא קיים) — הקורא צריך לדלג עליו.
        """
        claimed = await self._update(
            event_id,
            WebhookEvent.status.in_(_CLAIMABLE_STATUSES),
            status=WebhookEventStatus.PROCESSING,
            processing_started_at=utcnow(),
        )
        if not claimed:
            logger.debug(
                "Webhook event already claimed",
                extra_data={"webhook_event_id": event_id},
            )
        return claimed

    async def mark_processed(self, event_id: int) -> bool:
        return await self._update(
            event_id,
            status=WebhookEventStatus.PROCESSED,
            processed_at=utcnow(),
            last_error=None,
        )

    async def mark_failed(self, event_id: int, error: str, increment_retry: bool = True) -> bool:
        values: dict[str, Any] = {
            "status": WebhookEventStatus.FAILED,
            "last_error": error[:2000],
        }
        if increment_retry:
            values["retry_count"] = WebhookEvent.retry_count + 1
        return await self._update(event_id, **values)

    async def move_to_dead_letter(self, event_id: int, error: str) -> bool:
        logger.warning(
            "Webhook event moved to dead letter",
            extra_data={"webhook_event_id": event_id, "error": error},
        )
        return await self._update(
            event_id,
            status=WebhookEventStatus.DEAD_LETTER,
            last_error=error[:2000],
        )

    async def requeue_stale(self, event: WebhookEvent, max_retries: int) -> WebhookEventStatus | None:
        """
        אירוע תקוע ב-processing → pending (או dead_letter כשמוצו הניסיונות).

        מותנה ב-processing_started_at שנקרא: אם האירוע נתפס מחדש בינתיים, לא נוגעים בו.
        retry_count עולה כי הניסיון הקודם לא הושלם.

        Returns:
            הסטטוס החדש, או None אם האירוע כבר השתנה.
        """
        retry_count = event.retry_count + 1
        error = "Processing interrupted before completion"
        status = (
            WebhookEventStatus.DEAD_LETTER if retry_count >= max_retries
            else WebhookEventStatus.PENDING
        )
        moved = await self._update(
            event.id,
            WebhookEvent.status == WebhookEventStatus.PROCESSING,
            WebhookEvent.processing_started_at == event.processing_started_at,
            status=status,
            retry_count=retry_count,
            last_error=error,
            processing_started_at=None,
        )
        if not moved:
            return None
        logger.warning(
            "Stale webhook event requeued",
            extra_data={
                "webhook_event_id": event.id,
                "retry_count": retry_count,
                "status": status.value,
            },
        )
        return status

    async def retry(self, event_id: int) -> WebhookEvent:
        """retry ידני (מהדשבורד): failed / dead_letter → pending, ניקוי last_error"""
        event = await self.get(event_id)
        if event.status not in _MANUAL_RETRY_STATUSES:
            raise InvalidQueueStateError(
                event_id,
                current_status=event.status.value,
                allowed_statuses=[s.value for s in _MANUAL_RETRY_STATUSES],
                error_code=ErrorCode.WEBHOOK_EVENT_INVALID_STATUS,
            )
        await self._update(
            event_id,
            WebhookEvent.status.in_(_MANUAL_RETRY_STATUSES),
            status=WebhookEventStatus.PENDING,
            last_error=None,
        )
        await self.db.refresh(event)
        return event

    async def delete(self, event_id: int) -> bool:
        result = await self.db.execute(
            delete(WebhookEvent).where(WebhookEvent.id == event_id)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def delete_old_processed(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(WebhookEvent).where(
                WebhookEvent.status == WebhookEventStatus.PROCESSED,
                WebhookEvent.processed_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0

    async def get_stats(self) -> dict[str, Any]:
        """ספירה לפי סטטוס + זמן קבלת האירוע האחרון"""
        rows = await self.db.execute(
            select(WebhookEvent.status, func.count())
            .group_by(WebhookEvent.status)
        )
        counts = {status.value: 0 for status in WebhookEventStatus}
        for status, count in rows.all():
            counts[WebhookEventStatus(status).value] = count

        last_received = await self.db.scalar(select(func.max(WebhookEvent.received_at)))
        return {
            **counts,
            "total": sum(counts.values()),
            "last_received": last_received.isoformat() if last_received else None,
        }
