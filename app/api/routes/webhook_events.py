"""
Webhook Events — צפייה ותחזוקה של אירועים שנשמרו (X-Admin-API-Key).
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.exceptions import WebhookEventNotFoundError
from app.core.logging import get_logger
from app.db.database import get_db, get_session_factory
from app.db.models.webhook_event import WebhookEventStatus
from app.domain.services.event_store import EventStore
from app.domain.services.webhook_ingestion import process_event_in_background

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class WebhookEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    page_id: str | None
    event_type: str
    payload: Any
    status: WebhookEventStatus
    retry_count: int
    last_error: str | None
    received_at: datetime | None
    processed_at: datetime | None


class WebhookEventListResponse(BaseModel):
    events: list[WebhookEventResponse]
    total: int
    limit: int
    offset: int


@router.get("", response_model=WebhookEventListResponse)
async def list_webhook_events(
    status: WebhookEventStatus | None = Query(None),
    event_type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> WebhookEventListResponse:
    events, total = await EventStore(db).find_all(
        status=status, event_type=event_type, limit=limit, offset=offset
    )
    return WebhookEventListResponse(
        events=[WebhookEventResponse.model_validate(e) for e in events],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats")
async def webhook_event_stats(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return await EventStore(db).get_stats()


@router.get("/{event_id}", response_model=WebhookEventResponse)
async def get_webhook_event(
    event_id: int,
    db: AsyncSession = Depends(get_db),
) -> WebhookEventResponse:
    return WebhookEventResponse.model_validate(await EventStore(db).get(event_id))


@router.post("/{event_id}/retry", response_model=WebhookEventResponse)
async def retry_webhook_event(
    event_id: int,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> WebhookEventResponse:
    """failed / dead_letter → pending, ועיבוד מיידי ברקע"""
    event = await EventStore(db).retry(event_id)
    logger.info("Webhook event manually retried", extra_data={"webhook_event_id": event_id})
    background_tasks.add_task(process_event_in_background, session_factory, event_id)
    return WebhookEventResponse.model_validate(event)


@router.delete("/{event_id}")
async def delete_webhook_event(
    event_id: int,
    db: AsyncSession = Depends(get_db),
) -> dict[str, bool]:
    if not await EventStore(db).delete(event_id):
        raise WebhookEventNotFoundError(event_id)
    logger.info("Webhook event deleted", extra_data={"webhook_event_id": event_id})
    return {"success": True}
