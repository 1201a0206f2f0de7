"""
בדיקות ל-EventStore — מחזור החיים של webhook events שמורים
"""
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidQueueStateError, WebhookEventNotFoundError
from app.db.database import utcnow
from app.db.models.webhook_event import WebhookEventStatus
from app.domain.services.event_store import EventStore
from tests.conftest import build_message_payload


@pytest.mark.unit
class TestEventLifecycle:
    """create → processing → processed / failed"""

    @pytest.mark.asyncio
    async def test_create_keeps_payload(self, db_session: AsyncSession):
        payload = build_message_payload(mid="m_payload")

        event = await EventStore(db_session).create("instagram", payload, page_id="p1")

        assert event.id is not None
        assert event.status == WebhookEventStatus.PENDING
        assert event.retry_count == 0
        assert event.payload == payload
        assert event.received_at is not None

    @pytest.mark.asyncio
    async def test_mark_processing_claims_once(self, db_session: AsyncSession, webhook_event_factory):
        event = await webhook_event_factory()
        store = EventStore(db_session)

        assert await store.mark_processing(event.id) is True
        assert await store.mark_processing(event.id) is False

    @pytest.mark.asyncio
    async def test_processing_event_not_pending(self, db_session: AsyncSession, webhook_event_factory):
        """אחרי שנתפס — scheduler אחר לא שולף אותו שוב"""
        first = await webhook_event_factory()
        second = await webhook_event_factory()
        store = EventStore(db_session)

        await store.mark_processing(first.id)
        pending = await store.find_pending()

        assert [e.id for e in pending] == [second.id]

    @pytest.mark.asyncio
    async def test_find_pending_oldest_first(self, db_session: AsyncSession, webhook_event_factory):
        now = utcnow()
        newer = await webhook_event_factory(received_at=now)
        older = await webhook_event_factory(received_at=now - timedelta(minutes=5))

        pending = await EventStore(db_session).find_pending(limit=10)

        assert [e.id for e in pending] == [older.id, newer.id]

    @pytest.mark.asyncio
    async def test_mark_failed_increments(self, db_session: AsyncSession, webhook_event_factory):
        event = await webhook_event_factory(status=WebhookEventStatus.PROCESSING)
        store = EventStore(db_session)

        await store.mark_failed(event.id, "boom")
        await db_session.refresh(event)

        assert event.status == WebhookEventStatus.FAILED
        assert event.retry_count == 1
        assert event.last_error == "boom"

    @pytest.mark.asyncio
    async def test_mark_failed_without_increment(self, db_session: AsyncSession, webhook_event_factory):
        event = await webhook_event_factory(retry_count=2)

        await EventStore(db_session).mark_failed(event.id, "x", increment_retry=False)
        await db_session.refresh(event)

        assert event.retry_count == 2

    @pytest.mark.asyncio
    async def test_mark_processed_clears_error(self, db_session: AsyncSession, webhook_event_factory):
        event = await webhook_event_factory(status=WebhookEventStatus.FAILED)
        store = EventStore(db_session)
        await store.mark_failed(event.id, "old error")

        await store.mark_processed(event.id)
        await db_session.refresh(event)

        assert event.status == WebhookEventStatus.PROCESSED
        assert event.processed_at is not None
        assert event.last_error is None

    @pytest.mark.asyncio
    async def test_find_retryable(self, db_session: AsyncSession, webhook_event_factory):
        retryable = await webhook_event_factory(status=WebhookEventStatus.FAILED, retry_count=1)
        await webhook_event_factory(status=WebhookEventStatus.FAILED, retry_count=3)
        await webhook_event_factory(status=WebhookEventStatus.PENDING)

        found = await EventStore(db_session).find_retryable(max_retries=3)

        assert [e.id for e in found] == [retryable.id]


@pytest.mark.unit
class TestEventMaintenance:
    """retry ידני, מחיקה, סטטיסטיקה"""

    @pytest.mark.asyncio
    async def test_retry_dead_letter(self, db_session: AsyncSession, webhook_event_factory):
        event = await webhook_event_factory(status=WebhookEventStatus.DEAD_LETTER, retry_count=3)
        store = EventStore(db_session)

        retried = await store.retry(event.id)

        assert retried.status == WebhookEventStatus.PENDING
        assert retried.last_error is None

    @pytest.mark.asyncio
    async def test_retry_processed_rejected(self, db_session: AsyncSession, webhook_event_factory):
        event = await webhook_event_factory(status=WebhookEventStatus.PROCESSED)

        with pytest.raises(InvalidQueueStateError):
            await EventStore(db_session).retry(event.id)

    @pytest.mark.asyncio
    async def test_get_unknown(self, db_session: AsyncSession):
        with pytest.raises(WebhookEventNotFoundError):
            await EventStore(db_session).get(999)

    @pytest.mark.asyncio
    async def test_delete(self, db_session: AsyncSession, webhook_event_factory):
        event = await webhook_event_factory()
        store = EventStore(db_session)

        assert await store.delete(event.id) is True
        assert await store.delete(event.id) is False

    @pytest.mark.asyncio
    async def test_delete_old_processed(self, db_session: AsyncSession, webhook_event_factory):
        old = utcnow() - timedelta(days=40)
        await webhook_event_factory(status=WebhookEventStatus.PROCESSED, processed_at=old)
        recent = await webhook_event_factory(status=WebhookEventStatus.PROCESSED, processed_at=utcnow())
        failed = await webhook_event_factory(status=WebhookEventStatus.FAILED, received_at=old)

        deleted = await EventStore(db_session).delete_old_processed(30)

        assert deleted == 1
        events, total = await EventStore(db_session).find_all()
        assert total == 2
        assert {e.id for e in events} == {recent.id, failed.id}

    @pytest.mark.asyncio
    async def test_find_all_filters(self, db_session: AsyncSession, webhook_event_factory):
        await webhook_event_factory(status=WebhookEventStatus.FAILED)
        await webhook_event_factory(status=WebhookEventStatus.PROCESSED)

        events, total = await EventStore(db_session).find_all(status=WebhookEventStatus.FAILED)

        assert total == 1
        assert events[0].status == WebhookEventStatus.FAILED

    @pytest.mark.asyncio
    async def test_stats(self, db_session: AsyncSession, webhook_event_factory):
        await webhook_event_factory()
        await webhook_event_factory(status=WebhookEventStatus.DEAD_LETTER)

        stats = await EventStore(db_session).get_stats()

        assert stats["pending"] == 1
        assert stats["dead_letter"] == 1
        assert stats["total"] == 2
        assert stats["last_received"] is not None

    @pytest.mark.asyncio
    async def test_find_by_page_id_newest_first(self, db_session: AsyncSession, webhook_event_factory):
        now = utcnow()
        older = await webhook_event_factory(received_at=now - timedelta(minutes=5))
        newer = await webhook_event_factory(received_at=now)
        await EventStore(db_session).create("page", build_message_payload(), page_id="other")

        events = await EventStore(db_session).find_by_page_id("17841400000000001")

        assert [e.id for e in events] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_find_stale_processing(self, db_session: AsyncSession, webhook_event_factory):
        store = EventStore(db_session)
        stale = await webhook_event_factory(
            status=WebhookEventStatus.PROCESSING,
            processing_started_at=utcnow() - timedelta(minutes=10),
        )
        fresh = await webhook_event_factory()
        await store.mark_processing(fresh.id)

        found = await store.find_stale_processing(older_than_seconds=300)

        assert [e.id for e in found] == [stale.id]

    @pytest.mark.asyncio
    async def test_requeue_stale_skips_reclaimed_event(self, db_session: AsyncSession, webhook_event_factory):
        """אירוע שנתפס מחדש אחרי השליפה לא מוחזר ל-pending"""
        event = await webhook_event_factory(
            status=WebhookEventStatus.PROCESSING,
            processing_started_at=utcnow() - timedelta(minutes=10),
        )
        store = EventStore(db_session)
        [seen] = await store.find_stale_processing(older_than_seconds=300)

        await store.requeue_stale(seen, max_retries=3)
        assert await store.mark_processing(event.id) is True

        assert await store.requeue_stale(seen, max_retries=3) is None
        await db_session.refresh(event)
        assert event.status == WebhookEventStatus.PROCESSING
        assert event.retry_count == 1
