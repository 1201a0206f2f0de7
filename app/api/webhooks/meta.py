"""
Meta Webhook Handler — קבלת הודעות Instagram / Messenger.

GET  /webhook — handshake (hub.mode / hub.verify_token / hub.challenge)
POST /webhook — אימות X-Hub-Signature-256, שמירת האירוע, ack מיידי.

Meta מצפה לתשובה מהירה: החילוץ והכנסה לתור רצים ב-BackgroundTasks אחרי
שה-200 נשלח. כשלון בשלב הזה נרשם על האירוע (last_error / retry_count)
ומשימת ה-pending ב-Celery אוספת אותו; הוא לא מגיע ל-HTTP response.
"""
from __future__ import annotations

import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.dependencies.webhook_auth import (
    SIGNATURE_HEADER,
    verify_signature,
    verify_subscription,
)
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import get_db, get_session_factory
from app.domain.services import metrics_service
from app.domain.services.event_store import EventStore
from app.domain.services.message_extractor import event_type_of, page_id_of
from app.domain.services.metrics_service import Metric
from app.domain.services.webhook_ingestion import process_event_in_background

logger = get_logger(__name__)

router = APIRouter()

EVENT_RECEIVED = "EVENT_RECEIVED"


@router.get(
    "/webhook",
    summary="Meta Webhook Verification",
    description="handshake מול Meta — מחזיר את hub.challenge כטקסט אם verify_token תואם.",
    response_class=PlainTextResponse,
    responses={403: {"description": "mode / verify token לא תואמים"}},
)
async def verify_webhook(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
) -> PlainTextResponse:
    challenge = verify_subscription(
        hub_mode, hub_verify_token, hub_challenge, settings.META_VERIFY_TOKEN
    )
    if challenge is None:
        logger.warning(
            "Meta webhook verification failed",
            extra_data={"hub_mode": hub_mode},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")

    logger.info("Meta webhook verified successfully")
    return PlainTextResponse(content=challenge)


@router.post(
    "/webhook",
    summary="Meta Webhook",
    description="קבלת אירועים מ-Meta. החתימה נבדקת על ה-body הגולמי.",
    response_class=PlainTextResponse,
    responses={
        200: {"description": "האירוע נשמר (EVENT_RECEIVED)"},
        400: {"description": "body שאינו JSON"},
        401: {"description": "חתימה חסרה / לא תקינה"},
    },
)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> PlainTextResponse:
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    if not verify_signature(raw_body, signature, settings.META_APP_SECRET):
        logger.warning(
            "Meta webhook rejected: invalid signature",
            extra_data={"has_signature": bool(signature), "body_size": len(raw_body)},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning("Meta webhook body is not valid JSON")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    event = await EventStore(db).create(
        event_type=event_type_of(payload),
        payload=payload,
        page_id=page_id_of(payload),
    )
    await metrics_service.increment(Metric.WEBHOOKS_RECEIVED)
    logger.info(
        "Webhook event stored",
        extra_data={"webhook_event_id": event.id, "event_type": event.event_type},
    )

    background_tasks.add_task(process_event_in_background, session_factory, event.id)
    return PlainTextResponse(content=EVENT_RECEIVED)
