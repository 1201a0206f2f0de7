"""
Message Queue Service - תור ההודעות היוצאות ומכונת המצבים של ה-retry.

מצבים:
    pending → processing → ready_to_send → sent
    pending/processing/ready_to_send → failed → (retry) → ... → dead_letter

כללים:
- כל כשלון עובר דרך increment_retry: retry_count עולה ב-1 ו-next_retry_at
  נקבע ל-now + base * 2**retry_count (לפני ההגדלה). retry_count הוא הגורם
  היחיד שקובע backoff ו-dead letter.
- ההחלטה להעביר ל-dead_letter היא של הקורא (should_dead_letter), לא של
  increment_retry עצמו.
- פריט "בטיפול" אצל n8n מוגן ע"י UPDATE מותנה (claim), לא ע"י נעילה.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidQueueStateError, QueueItemNotFoundError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.message_queue_item import QueueItem, QueueItemStatus, TERMINAL_STATUSES
from app.domain.services.message_extractor import MessageData

logger = get_logger(__name__)

_RETRYABLE_STATUSES = (QueueItemStatus.PENDING, QueueItemStatus.FAILED)
_MANUAL_RETRY_STATUSES = (QueueItemStatus.FAILED, QueueItemStatus.DEAD_LETTER)


def calculate_backoff_seconds(retry_count: int, *, base_seconds: int) -> int:
    """
    backoff = base_seconds * 2**retry_count

    אין תקרה: מספר הניסיונות חסום ע"י max_retries, ולכן גם ה-backoff.
    """
    if retry_count < 0:
        retry_count = 0
    if base_seconds <= 0:
        return 0
    return base_seconds * (1 << retry_count)


def next_retry_time(retry_count: int, *, now: datetime | None = None) -> datetime:
    now = now or utcnow()
    return now + timedelta(
        seconds=calculate_backoff_seconds(
            retry_count, base_seconds=settings.QUEUE_RETRY_BASE_SECONDS
        )
    )


def should_dead_letter(item: QueueItem) -> bool:
    """אחרי increment_retry: האם מוצו הניסיונות"""
    return item.retry_count >= item.max_retries


class MessageQueueService:
    """Repository + state transitions עבור QueueItem"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== יצירה ושליפה ====================

    async def create(
        self,
        data: MessageData,
        *,
        page_id: str,
        webhook_event_id: int | None = None,
        max_retries: int | None = None,
    ) -> tuple[QueueItem, bool]:
        """
        יצירת פריט חדש לפי ההודעה.

        אידמפוטנטי לפי external_message_id: אם הפריט כבר קיים (או נוצר
        במקביל ע"י worker אחר והאילוץ הייחודי נכשל) — מחזירים את הקיים.

        Returns:
            (item, created)
        """
        existing = await self.find_by_message_id(data.message_id)
        if existing is not None:
            return existing, False

        item = QueueItem(
            webhook_event_id=webhook_event_id,
            page_id=page_id,
            external_conversation_id=data.conversation_id,
            sender_id=data.sender_id,
            recipient_id=data.recipient_id,
            message_text=data.message_text,
            external_message_id=data.message_id,
            status=QueueItemStatus.PENDING,
            retry_count=0,
            max_retries=max_retries or settings.QUEUE_MAX_RETRIES,
        )
        self.db.add(item)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.find_by_message_id(data.message_id)
            if existing is None:
                raise
            logger.info(
                "Queue item created concurrently, reusing existing",
                extra_data={"external_message_id": data.message_id},
            )
            return existing, False

        await self.db.refresh(item)
        logger.info(
            "Queue item created",
            extra_data={"queue_item_id": item.id, "external_message_id": item.external_message_id},
        )
        return item, True

    async def find_by_id(self, item_id: int) -> QueueItem | None:
        result = await self.db.execute(select(QueueItem).where(QueueItem.id == item_id))
        return result.scalar_one_or_none()

    async def find_by_message_id(self, external_message_id: str) -> QueueItem | None:
        result = await self.db.execute(
            select(QueueItem).where(QueueItem.external_message_id == external_message_id)
        )
        return result.scalar_one_or_none()

    async def get_by_message_id(self, external_message_id: str) -> QueueItem:
        item = await self.find_by_message_id(external_message_id)
        if item is None:
            raise QueueItemNotFoundError(external_message_id)
        return item

    async def find_by_status(
        self, status: QueueItemStatus, limit: int = 100, offset: int = 0
    ) -> list[QueueItem]:
        result = await self.db.execute(
            select(QueueItem)
            .where(QueueItem.status == status)
            .order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def find_by_page_id(
        self,
        page_id: str,
        *,
        status: QueueItemStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[QueueItem], int]:
        conditions = [QueueItem.page_id == page_id]
        if status is not None:
            conditions.append(QueueItem.status == status)

        total = await self.db.scalar(
            select(func.count()).select_from(QueueItem).where(*conditions)
        )
        result = await self.db.execute(
            select(QueueItem)
            .where(*conditions)
            .order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def list_items(
        self,
        *,
        status: QueueItemStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[QueueItem], int]:
        conditions = [QueueItem.status == status] if status is not None else []
        total = await self.db.scalar(
            select(func.count()).select_from(QueueItem).where(*conditions)
        )
        result = await self.db.execute(
            select(QueueItem)
            .where(*conditions)
            .order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def get_ready_for_retry(self, limit: int | None = None) -> list[QueueItem]:
        """
        פריטים שמוכנים לניסיון (שוב): pending/failed, עוד לא מוצו,
        ו-next_retry_at ריק או שעבר. מסודר לפי next_retry_at (ריקים קודם).
        """
        now = utcnow()
        result = await self.db.execute(
            select(QueueItem)
            .where(
                QueueItem.status.in_(_RETRYABLE_STATUSES),
                QueueItem.retry_count < QueueItem.max_retries,
                or_(QueueItem.next_retry_at.is_(None), QueueItem.next_retry_at <= now),
            )
            .order_by(QueueItem.next_retry_at.asc().nulls_first(), QueueItem.id.asc())
            .limit(limit or settings.QUEUE_BATCH_LIMIT)
        )
        return list(result.scalars().all())

    async def get_ready_to_send(self, limit: int | None = None) -> list[QueueItem]:
        result = await self.db.execute(
            select(QueueItem)
            .where(QueueItem.status == QueueItemStatus.READY_TO_SEND)
            .order_by(QueueItem.received_from_external_at.asc().nulls_first(), QueueItem.id.asc())
            .limit(limit or settings.QUEUE_BATCH_LIMIT)
        )
        return list(result.scalars().all())

    async def find_stale_processing(self, older_than_seconds: float, limit: int = 100) -> list[QueueItem]:
        """פריטים שנשלחו ל-n8n ולא חזר עליהם callback בזמן"""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        result = await self.db.execute(
            select(QueueItem)
            .where(
                QueueItem.status == QueueItemStatus.PROCESSING,
                QueueItem.updated_at < cutoff,
            )
            .order_by(QueueItem.updated_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ==================== מעברי מצב ====================

    async def _update(self, item_id: int, *conditions, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        result = await self.db.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def update_status(self, item_id: int, status: QueueItemStatus, **fields: Any) -> bool:
        return await self._update(item_id, status=status, **fields)

    async def claim(
        self,
        item_id: int,
        from_statuses: tuple[QueueItemStatus, ...],
        to_status: QueueItemStatus,
        **fields: Any,
    ) -> bool:
        """
        מעבר מותנה: מצליח רק אם הפריט עדיין באחד מ-from_statuses.

        משמש כשער "בטיפול" — שני workers שתפסו את אותו פריט, רק אחד ממשיך.
        """
        return await self._update(
            item_id,
            QueueItem.status.in_(from_statuses),
            status=to_status,
            **fields,
        )

    async def touch(self, item_id: int, status: QueueItemStatus, seen_updated_at: datetime) -> bool:
        """
        תפיסה אופטימית בלי שינוי סטטוס: מצליח רק אם הפריט לא השתנה מאז
        שנקרא (אותו status ואותו updated_at).
        """
        return await self._update(
            item_id,
            QueueItem.status == status,
            QueueItem.updated_at == seen_updated_at,
        )

    async def mark_sent_to_external(self, item_id: int, sent_at: datetime) -> bool:
        """
        חותמת זמן השליחה ל-n8n בלי לשנות status ובלי לגעת ב-updated_at.

        callback יכול להגיע לפני ש-n8n עונה על ה-POST; במקרה כזה הפריט כבר
        ready_to_send וחייב להישאר כך.
        """
        return await self._update(
            item_id,
            sent_to_external_at=sent_at,
            updated_at=QueueItem.updated_at,
        )

    async def increment_retry(self, item_id: int, error: str) -> QueueItem | None:
        """
        רישום כשלון: retry_count+1, last_error, last_retry_at, next_retry_at, status=failed.

        מותנה ב-retry_count שנקרא: אם worker אחר רשם כשלון בינתיים, הכתיבה
        לא מתבצעת והכשלון לא נספר פעמיים.

        Returns:
            הפריט המעודכן (כדי שהקורא יחליט על dead letter), או None אם לא קיים
            או שהכשלון כבר נרשם ע"י worker אחר.
        """
        item = await self.find_by_id(item_id)
        if item is None:
            return None

        now = utcnow()
        previous = item.retry_count
        recorded = await self._update(
            item_id,
            QueueItem.retry_count == previous,
            status=QueueItemStatus.FAILED,
            retry_count=previous + 1,
            last_error=error[:2000],
            last_retry_at=now,
            next_retry_at=next_retry_time(previous, now=now),
            updated_at=now,
        )
        await self.db.refresh(item)
        if not recorded:
            logger.info(
                "Queue item failure already recorded by another worker",
                extra_data={"queue_item_id": item_id, "retry_count": item.retry_count, "error": error},
            )
            return None
        logger.warning(
            "Queue item failed",
            extra_data={
                "queue_item_id": item_id,
                "retry_count": item.retry_count,
                "max_retries": item.max_retries,
                "next_retry_at": item.next_retry_at,
                "error": error,
            },
        )
        return item

    async def move_to_dead_letter(self, item_id: int, error: str | None = None) -> bool:
        values: dict[str, Any] = {"status": QueueItemStatus.DEAD_LETTER}
        if error:
            values["last_error"] = error[:2000]
        moved = await self._update(item_id, **values)
        if moved:
            logger.error(
                "Queue item moved to dead letter",
                extra_data={"queue_item_id": item_id, "error": error},
            )
        return moved

    async def record_failure(self, item_id: int, error: str) -> QueueItem | None:
        """increment_retry + dead letter כשמוצו הניסיונות"""
        item = await self.increment_retry(item_id, error)
        if item is not None and should_dead_letter(item):
            await self.move_to_dead_letter(item_id, error)
            await self.db.refresh(item)
        return item

    async def manual_retry(self, external_message_id: str) -> QueueItem:
        """
        retry ידני של מפעיל: רק מ-failed / dead_letter.

        retry_count לא משתנה (הוא עולה רק בכשלון), ו-max_retries מורחב
        בתקציב ניסיונות מלא. הפריט כשיר מיד (next_retry_at ריק), וכשלונות
        הבאים ממשיכים את אותה נוסחת backoff מה-retry_count הנוכחי.
        """
        item = await self.get_by_message_id(external_message_id)
        if item.status not in _MANUAL_RETRY_STATUSES:
            raise InvalidQueueStateError(
                external_message_id,
                current_status=item.status.value,
                allowed_statuses=[s.value for s in _MANUAL_RETRY_STATUSES],
            )

        now = utcnow()
        await self._update(
            item.id,
            QueueItem.status.in_(_MANUAL_RETRY_STATUSES),
            status=QueueItemStatus.PENDING,
            max_retries=item.retry_count + settings.QUEUE_MAX_RETRIES,
            last_error=None,
            last_retry_at=now,
            next_retry_at=None,
            updated_at=now,
        )
        await self.db.refresh(item)
        logger.info(
            "Queue item manually retried",
            extra_data={"queue_item_id": item.id, "external_message_id": external_message_id},
        )
        return item

    # ==================== סטטיסטיקה וניקוי ====================

    async def count_by_status(self, status: QueueItemStatus) -> int:
        count = await self.db.scalar(
            select(func.count()).select_from(QueueItem).where(QueueItem.status == status)
        )
        return int(count or 0)

    async def get_stats(self) -> dict[str, Any]:
        rows = await self.db.execute(
            select(QueueItem.status, func.count()).group_by(QueueItem.status)
        )
        counts = {status.value: 0 for status in QueueItemStatus}
        for status, count in rows.all():
            counts[QueueItemStatus(status).value] = count

        last_created = await self.db.scalar(select(func.max(QueueItem.created_at)))
        return {
            **counts,
            "total": sum(counts.values()),
            "last_created": last_created.isoformat() if last_created else None,
        }

    async def delete_older_than(self, days: int) -> int:
        """מחיקת פריטים סופיים (sent / dead_letter) שנוצרו לפני יותר מ-days ימים"""
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(QueueItem).where(
                QueueItem.status.in_(TERMINAL_STATUSES),
                QueueItem.created_at < cutoff,
            )
        )
        await self.db.commit()
        deleted = result.rowcount or 0
        logger.info(
            "Old queue items deleted",
            extra_data={"deleted": deleted, "retention_days": days},
        )
        return deleted
