"""
External Processor Client - העברת הודעה נכנסת ל-workflow של n8n.

n8n מחזיר את תשובת ה-AI מאוחר יותר דרך POST /integration/callback.
הלקוח לא מנסה שוב בעצמו: כל כשלון (סטטוס לא 2xx, שגיאת רשת, timeout)
מחזיר False, וה-retry נעשה ע"י התור (increment_retry) בסבב הבא.
"""
from __future__ import annotations

import asyncio

import httpx

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.domain.services.message_extractor import MessageData
from app.domain.services.message_queue_service import MessageQueueService

logger = get_logger(__name__)

CALLBACK_PATH = "/integration/callback"


class ExternalProcessorClient:
    """שליחת הודעות ל-n8n עם timeout קשיח לכל בקשה"""

    def __init__(
        self,
        queue: MessageQueueService,
        *,
        http_client: httpx.AsyncClient | None = None,
        enabled: bool | None = None,
        webhook_url: str | None = None,
        callback_secret: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._queue = queue
        self._http_client = http_client
        self._enabled = settings.N8N_ENABLED if enabled is None else enabled
        self._webhook_url = settings.N8N_WEBHOOK_URL if webhook_url is None else webhook_url
        self._callback_secret = (
            settings.N8N_CALLBACK_SECRET if callback_secret is None else callback_secret
        )
        self._timeout_seconds = timeout_seconds or settings.N8N_TIMEOUT_SECONDS

    @property
    def callback_url(self) -> str:
        return f"{settings.BASE_URL}{CALLBACK_PATH}"

    def _build_payload(self, message_data: MessageData) -> dict:
        return {
            **message_data.to_processor_payload(),
            "callbackUrl": self.callback_url,
            "callbackSecret": self._callback_secret,
        }

    async def _post(self, payload: dict) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self._webhook_url, json=payload)
        async with httpx.AsyncClient(timeout=self._timeout_seconds + 5) as client:
            return await client.post(self._webhook_url, json=payload)

    async def forward(self, message_data: MessageData, queue_item_id: int) -> bool:
        """
        העברת ההודעה ל-n8n.

        Returns:
            True אם n8n קיבל את ההודעה (2xx). False אם האינטגרציה כבויה,
            לא מוגדר URL, או שהבקשה נכשלה / חרגה מה-timeout.
        """
        if not self._enabled:
            logger.debug("n8n integration is disabled")
            return False

        if not self._webhook_url:
            logger.error("N8N_WEBHOOK_URL is not configured")
            return False

        logger.info(
            "Forwarding message to n8n",
            extra_data={
                "queue_item_id": queue_item_id,
                "message_id": message_data.message_id,
            },
        )

        try:
            # wait_for מבטל את ה-request שהפסיד במרוץ
            response = await asyncio.wait_for(
                self._post(self._build_payload(message_data)),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "n8n request timed out",
                extra_data={
                    "queue_item_id": queue_item_id,
                    "timeout_seconds": self._timeout_seconds,
                },
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "Error forwarding message to n8n",
                extra_data={"queue_item_id": queue_item_id, "error": str(e)},
            )
            return False

        if not response.is_success:
            logger.error(
                "n8n webhook returned error",
                extra_data={
                    "queue_item_id": queue_item_id,
                    "status_code": response.status_code,
                    "response_text": (response.text or "")[:500],
                },
            )
            return False

        # רק חותמת זמן: callback מהיר כבר יכול היה להעביר את הפריט ל-ready_to_send
        await self._queue.mark_sent_to_external(queue_item_id, utcnow())
        logger.info(
            "Message forwarded to n8n",
            extra_data={"queue_item_id": queue_item_id, "message_id": message_data.message_id},
        )
        return True
