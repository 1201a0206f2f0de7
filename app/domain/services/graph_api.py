"""
Graph API Client - שליחת הודעות ל-Instagram / Messenger דרך Meta Graph API.

כל קריאה עוברת דרך make_request: timeout עצמאי לכל ניסיון, סיווג שגיאה,
ו-retry עם exponential backoff רק לשגיאות שניתן לנסות שוב.

סיווג:
    TIMEOUT            — recoverable
    RATE_LIMITED       — 429, recoverable, המתנה קבועה ארוכה (retry_after)
    INVALID_TOKEN      — 401 / code 190, דורש רענון טוקן, לא מנסים שוב
    PERMISSION_DENIED  — 403 / code 200, דורש הרשאה מחדש, לא מנסים שוב
    INVALID_REQUEST    — 400 / code 100, לא recoverable
    SERVER_ERROR       — 5xx, recoverable
    CLIENT_ERROR       — 4xx אחר, לא recoverable
    UNKNOWN_ERROR      — ברירת מחדל, recoverable
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable

import httpx

from app.core.config import settings
from app.core.exceptions import GraphApiError
from app.core.logging import get_logger

logger = get_logger(__name__)


class GraphErrorType(str, enum.Enum):
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_TOKEN = "INVALID_TOKEN"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INVALID_REQUEST = "INVALID_REQUEST"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class GraphErrorClassification:
    type: GraphErrorType
    message: str
    recoverable: bool
    suggestion: str
    status_code: int | None = None
    retry_after: int | None = None
    # שגיאות שנפתרות רק מחוץ למערכת (רענון טוקן / הרשאות)
    requires_remediation: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


def _parse_retry_after(value: str | None) -> int:
    try:
        return int(value) if value else 60
    except ValueError:
        return 60


def classify_error(
    *,
    status_code: int | None = None,
    data: Any = None,
    headers: httpx.Headers | dict | None = None,
    exc: BaseException | None = None,
) -> GraphErrorClassification:
    """סיווג כשלון לפי exception / סטטוס HTTP / קוד השגיאה של Meta בגוף התשובה"""
    error_body = data.get("error") if isinstance(data, dict) else None
    error_code = error_body.get("code") if isinstance(error_body, dict) else None
    error_message = (
        error_body.get("message") if isinstance(error_body, dict) else None
    ) or (str(exc) if exc else "Unknown error")

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return GraphErrorClassification(
            type=GraphErrorType.TIMEOUT,
            message="Request timed out",
            recoverable=True,
            suggestion="Retry the request",
        )

    if status_code == 429:
        retry_after = _parse_retry_after((headers or {}).get("retry-after"))
        return GraphErrorClassification(
            type=GraphErrorType.RATE_LIMITED,
            message="Rate limited by Meta API",
            recoverable=True,
            suggestion="Wait before retrying",
            status_code=status_code,
            retry_after=retry_after,
        )

    if status_code == 401 or error_code == 190:
        return GraphErrorClassification(
            type=GraphErrorType.INVALID_TOKEN,
            message="Access token is invalid or expired",
            recoverable=False,
            suggestion="Token needs to be refreshed or user needs to re-authenticate",
            status_code=status_code,
            requires_remediation=True,
        )

    if status_code == 403 or error_code == 200:
        return GraphErrorClassification(
            type=GraphErrorType.PERMISSION_DENIED,
            message="Missing required permissions or scope",
            recoverable=False,
            suggestion="User needs to grant additional permissions",
            status_code=status_code,
            requires_remediation=True,
        )

    if status_code == 400 or error_code == 100:
        return GraphErrorClassification(
            type=GraphErrorType.INVALID_REQUEST,
            message=f"Invalid request parameters: {error_message}",
            recoverable=False,
            suggestion="Check request parameters and try again",
            status_code=status_code,
        )

    if status_code is not None and status_code >= 500:
        return GraphErrorClassification(
            type=GraphErrorType.SERVER_ERROR,
            message="Meta API server error",
            recoverable=True,
            suggestion="Retry the request",
            status_code=status_code,
        )

    if status_code is not None and status_code >= 400:
        return GraphErrorClassification(
            type=GraphErrorType.CLIENT_ERROR,
            message=f"HTTP {status_code} error",
            recoverable=False,
            suggestion="Check request and try again",
            status_code=status_code,
        )

    return GraphErrorClassification(
        type=GraphErrorType.UNKNOWN_ERROR,
        message=error_message,
        recoverable=True,
        suggestion="Retry the request",
        status_code=status_code,
    )


RetryHook = Callable[[dict[str, Any]], None]


class GraphApiClient:
    """
    לקוח Graph API.

    http_client ו-sleep ניתנים להזרקה (בדיקות). ה-access token נשלח
    כ-query parameter, כמו שה-API של Meta מצפה.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        initial_retry_delay: float | None = None,
        max_retry_delay: float | None = None,
        rate_limit_delay: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url or settings.GRAPH_API_BASE_URL
        self._timeout = timeout_seconds or settings.GRAPH_API_TIMEOUT_SECONDS
        self._max_retries = settings.GRAPH_API_MAX_RETRIES if max_retries is None else max_retries
        self._initial_delay = (
            settings.GRAPH_API_INITIAL_RETRY_DELAY_SECONDS
            if initial_retry_delay is None else initial_retry_delay
        )
        self._max_delay = (
            settings.GRAPH_API_MAX_RETRY_DELAY_SECONDS if max_retry_delay is None else max_retry_delay
        )
        self._rate_limit_delay = (
            settings.GRAPH_API_RATE_LIMIT_DELAY_SECONDS if rate_limit_delay is None else rate_limit_delay
        )
        self._http_client = http_client
        self._sleep = sleep

    def get_backoff_delay(self, attempt: int, *, is_rate_limit: bool = False) -> float:
        """min(initial * 2**attempt, max); rate limit → המתנה קבועה"""
        if is_rate_limit:
            return self._rate_limit_delay
        return min(self._initial_delay * (2 ** attempt), self._max_delay)

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        params: dict[str, Any],
        body: dict[str, Any] | None,
    ) -> Any:
        """ניסיון יחיד. מחזיר JSON או זורק GraphApiError מסווג."""
        try:
            response = await client.request(
                method, url, params=params, json=body, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            raise GraphApiError(classify_error(exc=exc), operation=f"{method} {url}") from exc

        try:
            data = response.json() if response.content else None
        except ValueError:
            # חלק מתשובות ה-Graph ריקות / לא JSON
            data = None

        if not response.is_success:
            classification = classify_error(
                status_code=response.status_code, data=data, headers=response.headers
            )
            raise GraphApiError(
                classification,
                operation=f"{method} {url}",
                details={"status_code": response.status_code, "response": data},
            )
        return data

    async def make_request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        max_retries: int | None = None,
        on_retry: RetryHook | None = None,
        on_error: RetryHook | None = None,
        retry_rate_limited: bool = True,
    ) -> Any:
        """
        קריאה ל-Graph API עם retry.

        מספר הניסיונות הכולל הוא max_retries + 1. שגיאה לא recoverable
        יוצאת מיד בלי לצרוך את שאר הניסיונות.

        retry_rate_limited=False: RATE_LIMITED נזרק מיד במקום המתנה קבועה
        בתוך הקריאה (התור ינסה שוב אחרי backoff משלו).

        Raises:
            GraphApiError: אחרי הניסיון האחרון או בשגיאה לא recoverable.
        """
        max_retries = self._max_retries if max_retries is None else max_retries
        url = f"{self._base_url}{endpoint}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if access_token:
            query["access_token"] = access_token

        async def _attempts(client: httpx.AsyncClient) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await self._send(client, method, url, query, body)
                except GraphApiError as error:
                    classification = error.classification
                    logger.warning(
                        "Graph API attempt failed",
                        extra_data={
                            "endpoint": endpoint,
                            "method": method,
                            "attempt": attempt + 1,
                            "max_attempts": max_retries + 1,
                            "error_type": classification.type.value,
                            "status_code": classification.status_code,
                            "suggestion": classification.suggestion,
                        },
                    )

                    is_rate_limit = classification.type == GraphErrorType.RATE_LIMITED
                    retry = classification.recoverable and (retry_rate_limited or not is_rate_limit)
                    if attempt < max_retries and retry:
                        delay = self.get_backoff_delay(attempt, is_rate_limit=is_rate_limit)
                        if on_retry:
                            on_retry({
                                "attempt": attempt + 1,
                                "max_retries": max_retries,
                                "delay": delay,
                                "classification": classification,
                            })
                        await self._sleep(delay)
                        continue

                    if on_error:
                        on_error({
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "classification": classification,
                            "error": error,
                        })
                    raise

        if self._http_client is not None:
            return await _attempts(self._http_client)
        async with httpx.AsyncClient() as client:
            return await _attempts(client)

    # ── פעולות ──

    async def send_message(
        self,
        recipient_id: str,
        text: str,
        page_access_token: str,
        **options: Any,
    ) -> dict[str, Any]:
        """
        שליחת הודעת טקסט ל-IGSID / PSID.

        options עוברים ל-make_request (hooks, retry_rate_limited).

        Returns:
            {"recipient_id": ..., "message_id": ...}
        """
        data = await self.make_request(
            "/me/messages",
            method="POST",
            access_token=page_access_token,
            body={
                "recipient": {"id": recipient_id},
                "message": {"text": text},
                "messaging_type": "RESPONSE",
            },
            **options,
        )
        if not isinstance(data, dict) or not data.get("message_id"):
            raise GraphApiError(
                classify_error(data=data),
                operation="send_message",
                details={"response": data},
            )
        return data

    async def subscribe_webhooks(
        self, page_id: str, page_access_token: str, fields: str = "messages"
    ) -> Any:
        return await self.make_request(
            f"/{page_id}/subscribed_apps",
            method="POST",
            access_token=page_access_token,
            params={"subscribed_fields": fields},
        )

    async def unsubscribe_webhooks(
        self, page_id: str, page_access_token: str, fields: str = "messages"
    ) -> Any:
        return await self.make_request(
            f"/{page_id}/subscribed_apps",
            method="DELETE",
            access_token=page_access_token,
            params={"subscribed_fields": fields},
        )

    async def get_pages(self, user_access_token: str) -> list[dict[str, Any]]:
        data = await self.make_request(
            "/me/accounts",
            access_token=user_access_token,
            params={"fields": "name,id,access_token"},
        )
        return (data or {}).get("data", [])

    async def exchange_token(self, token: str) -> dict[str, Any]:
        """
        החלפת טוקן לטוקן ארוך-טווח (fb_exchange_token).

        Returns:
            {"access_token": ..., "expires_in": ...}
        """
        return await self.make_request(
            "/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": settings.META_APP_ID,
                "client_secret": settings.META_APP_SECRET,
                "fb_exchange_token": token,
            },
        )
