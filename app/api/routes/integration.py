"""
Integration Endpoints — callback מ-n8n וכלי תפעול לתור ההודעות.

callback_router (ללא מפתח אדמין, מאומת ב-X-Callback-Secret):
    POST /integration/callback

router (X-Admin-API-Key):
    GET  /integration/status/{message_id}
    POST /integration/retry/{message_id}
    GET  /integration/queue
    GET  /integration/metrics
    GET  /integration/metrics/summary
    GET  /integration/metrics/alerts
    POST /integration/metrics/reset
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.rate_limit import limit_callback_rate
from app.api.dependencies.webhook_auth import verify_callback_secret
from app.core.exceptions import ErrorCode, InvalidQueueStateError, ValidationException
from app.core.logging import get_logger
from app.db.database import get_db, utcnow
from app.db.models.message_queue_item import QueueItemStatus, TERMINAL_STATUSES
from app.domain.services import metrics_service
from app.domain.services.message_queue_service import MessageQueueService
from app.domain.services.metrics_service import Metric
from app.domain.services.queue_processor import PROCESSOR_SUCCESS_STATUS

logger = get_logger(__name__)

callback_router = APIRouter()
router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_CALLBACK_REQUIRED_FIELDS = ("messageId", "senderId", "recipientId", "aiResponse")
_CALLBACK_ACCEPT_STATUSES = tuple(s for s in QueueItemStatus if s not in TERMINAL_STATUSES)


# ─── Pydantic models ────────────────────────────────────────────────────────

class CallbackRequest(BaseModel):
    """גוף ה-callback כפי ש-n8n שולח אותו (camelCase)"""
    model_config = ConfigDict(extra="ignore")

    messageId: str | None = None
    senderId: str | None = None
    recipientId: str | None = None
    aiResponse: str | None = None
    status: str | None = None
    n8nExecutionId: str | None = None


class CallbackResponse(BaseModel):
    success: bool = True
    messageId: str
    status: str


class QueueItemResponse(BaseModel):
    """פריט בתור ההודעות"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    webhook_event_id: int | None
    page_id: str
    external_conversation_id: str
    sender_id: str
    recipient_id: str
    message_text: str
    external_message_id: str
    status: QueueItemStatus
    ai_response: str | None
    external_status: str | None
    external_execution_id: str | None
    retry_count: int
    max_retries: int
    last_error: str | None
    last_retry_at: datetime | None
    next_retry_at: datetime | None
    sent_to_external_at: datetime | None
    received_from_external_at: datetime | None
    sent_to_platform_at: datetime | None
    platform_message_id: str | None
    created_at: datetime | None
    updated_at: datetime | None


class QueueListResponse(BaseModel):
    items: list[QueueItemResponse]
    total: int
    limit: int
    offset: int
    stats: dict[str, Any]


class AlertHistoryResponse(BaseModel):
    alerts: list[dict[str, Any]]
    active: list[dict[str, Any]] = Field(description="התראות לפי ה-snapshot הנוכחי")


# ─── Callback ───────────────────────────────────────────────────────────────

async def _parse_callback(request: Request) -> CallbackRequest:
    try:
        raw = await request.json()
    except ValueError:
        raise ValidationException("Request body must be valid JSON")
    if not isinstance(raw, dict):
        raise ValidationException("Request body must be a JSON object")

    body = CallbackRequest.model_validate(raw)
    missing = [name for name in _CALLBACK_REQUIRED_FIELDS if not getattr(body, name)]
    if missing:
        raise ValidationException(
            "Missing required fields",
            details={"missing_fields": missing},
        )
    return body


@callback_router.post(
    "/callback",
    response_model=CallbackResponse,
    summary="n8n callback",
    description="קבלת תשובת ה-AI מ-n8n ועדכון פריט התור.",
    responses={
        400: {"description": "שדות חובה חסרים"},
        401: {"description": "X-Callback-Secret חסר / שגוי"},
        404: {"description": "messageId לא מוכר"},
        409: {"description": "הפריט כבר במצב סופי"},
        429: {"description": "חריגה מ-rate limit"},
    },
    dependencies=[Depends(limit_callback_rate), Depends(verify_callback_secret)],
)
async def integration_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> CallbackResponse:
    body = await _parse_callback(request)
    queue = MessageQueueService(db)
    item = await queue.get_by_message_id(body.messageId)

    if item.is_terminal:
        raise InvalidQueueStateError(
            body.messageId,
            current_status=item.status.value,
            allowed_statuses=[s.value for s in _CALLBACK_ACCEPT_STATUSES],
            error_code=ErrorCode.QUEUE_ITEM_TERMINAL,
        )

    succeeded = body.status == PROCESSOR_SUCCESS_STATUS
    reply_fields = {
        "ai_response": body.aiResponse,
        "external_status": body.status,
        "external_execution_id": body.n8nExecutionId,
        "received_from_external_at": utcnow(),
    }

    if succeeded:
        # מותנה: פריט שהפך ל-sent / dead_letter בינתיים לא נדרס
        accepted = await queue.claim(
            item.id, _CALLBACK_ACCEPT_STATUSES, QueueItemStatus.READY_TO_SEND, **reply_fields
        )
        if not accepted:
            await db.refresh(item)
            raise InvalidQueueStateError(
                body.messageId,
                current_status=item.status.value,
                allowed_statuses=[s.value for s in _CALLBACK_ACCEPT_STATUSES],
                error_code=ErrorCode.QUEUE_ITEM_TERMINAL,
            )
    else:
        await queue.update_status(item.id, item.status, **reply_fields)
        await queue.record_failure(item.id, f"n8n reported status: {body.status or 'missing'}")
        await metrics_service.increment(Metric.PROCESSOR_ERRORS)

    await db.refresh(item)
    logger.info(
        "Integration callback processed",
        extra_data={
            "queue_item_id": item.id,
            "message_id": body.messageId,
            "external_status": body.status,
            "execution_id": body.n8nExecutionId,
            "new_status": item.status.value,
        },
    )
    return CallbackResponse(messageId=body.messageId, status=item.status.value)


# ─── Operator endpoints ─────────────────────────────────────────────────────

@router.get("/status/{message_id}", response_model=QueueItemResponse)
async def get_message_status(
    message_id: str,
    db: AsyncSession = Depends(get_db),
) -> QueueItemResponse:
    item = await MessageQueueService(db).get_by_message_id(message_id)
    return QueueItemResponse.model_validate(item)


@router.post("/retry/{message_id}", response_model=QueueItemResponse)
async def retry_message(
    message_id: str,
    db: AsyncSession = Depends(get_db),
) -> QueueItemResponse:
    """retry ידני לפריט failed / dead_letter (409 מכל מצב אחר)"""
    item = await MessageQueueService(db).manual_retry(message_id)
    return QueueItemResponse.model_validate(item)


@router.get("/queue", response_model=QueueListResponse)
async def list_queue(
    status: QueueItemStatus | None = Query(None),
    page_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> QueueListResponse:
    queue = MessageQueueService(db)
    if page_id:
        items, total = await queue.find_by_page_id(page_id, status=status, limit=limit, offset=offset)
    else:
        items, total = await queue.list_items(status=status, limit=limit, offset=offset)
    return QueueListResponse(
        items=[QueueItemResponse.model_validate(i) for i in items],
        total=total,
        limit=limit,
        offset=offset,
        stats=await queue.get_stats(),
    )


@router.get("/metrics")
async def get_metrics() -> dict[str, Any]:
    return await metrics_service.get_metrics()


@router.get("/metrics/summary")
async def get_metrics_summary(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    summary = await metrics_service.get_summary()
    summary["queue"] = await MessageQueueService(db).get_stats()
    return summary


@router.get("/metrics/alerts", response_model=AlertHistoryResponse)
async def get_alerts(
    limit: int = Query(50, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> AlertHistoryResponse:
    dead_letters = await MessageQueueService(db).count_by_status(QueueItemStatus.DEAD_LETTER)
    active = metrics_service.check_alerts(await metrics_service.get_summary(), dead_letters)
    return AlertHistoryResponse(
        alerts=await metrics_service.get_alert_history(limit),
        active=active,
    )


@router.post("/metrics/reset")
async def reset_metrics() -> dict[str, bool]:
    await metrics_service.reset_metrics()
    return {"success": True}
