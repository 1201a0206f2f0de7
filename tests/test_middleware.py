"""
בדיקות ל-Middleware — app/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID בבקשות
- RequestLoggingMiddleware: לוג בקשות עם מיסוך טוקנים ב-query
- WebhookRateLimitMiddleware: הגבלת קצב webhook
- Exception handlers: טיפול ב-AppException ו-Exception גנרי
- setup_middleware: הגדרת middleware stack
"""
from unittest.mock import AsyncMock, patch

import pytest
from starlette.applications import Starlette
from starlette.datastructures import QueryParams
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    WebhookRateLimitMiddleware,
    _safe_query_params,
    app_exception_handler,
    generic_exception_handler,
)
from app.core.exceptions import AppException, ErrorCode
from tests.conftest import TEST_VERIFY_TOKEN


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    """endpoint מינימלי לבדיקה."""
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    """endpoint שמדמה webhook."""
    return PlainTextResponse("webhook ok")


def _error(request: Request) -> PlainTextResponse:
    """endpoint שזורק שגיאה."""
    raise ValueError("שגיאת בדיקה")


def _build_app(
    *,
    routes: list[Route] | None = None,
    middlewares: list[tuple] | None = None,
) -> Starlette:
    """בונה אפליקציית Starlette מינימלית עם middleware."""
    default_routes = [
        Route("/test", _hello),
        Route("/webhook", _webhook, methods=["GET", "POST"]),
        Route("/api/webhook-events", _hello),
        Route("/error", _error),
    ]
    app = Starlette(routes=routes or default_routes)
    if middlewares:
        for mw_class, kwargs in middlewares:
            app.add_middleware(mw_class, **kwargs)
    return app


# ============================================================================
# בדיקות _safe_query_params
# ============================================================================


class TestSafeQueryParams:
    """בדיקות למיסוך טוקנים ב-query string לפני כתיבה ללוג"""

    @staticmethod
    def _request(query: str) -> Request:
        mock_request = AsyncMock(spec=Request)
        mock_request.query_params = QueryParams(query)
        return mock_request

    @pytest.mark.unit
    def test_masks_verify_token(self) -> None:
        """ה-verify token של handshake מוסתר, ה-challenge נשאר"""
        params = _safe_query_params(
            self._request("hub.mode=subscribe&hub.verify_token=secret&hub.challenge=123")
        )
        assert params == {
            "hub.mode": "subscribe",
            "hub.verify_token": "***",
            "hub.challenge": "123",
        }

    @pytest.mark.unit
    def test_masks_access_token(self) -> None:
        params = _safe_query_params(self._request("access_token=EAAB&limit=10"))
        assert params["access_token"] == "***"
        assert params["limit"] == "10"

    @pytest.mark.unit
    def test_no_params(self) -> None:
        assert _safe_query_params(self._request("")) == {}


# ============================================================================
# בדיקות CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:
    """בדיקות להפצת Correlation ID"""

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        """יוצר correlation ID חדש כשאין בבקשה"""
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert "x-correlation-id" in response.headers
            assert len(response.headers["x-correlation-id"]) > 0

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        """משתמש ב-correlation ID שסופק בבקשה"""
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        custom_id = "my-custom-correlation-id"
        with TestClient(app) as client:
            response = client.get(
                "/test", headers={"X-Correlation-ID": custom_id}
            )
            assert response.headers["x-correlation-id"] == custom_id

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        """כל בקשה מקבלת correlation ID ייחודי"""
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            r1 = client.get("/test")
            r2 = client.get("/test")
            assert r1.headers["x-correlation-id"] != r2.headers["x-correlation-id"]


# ============================================================================
# בדיקות RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:
    """בדיקות ללוג בקשות"""

    @pytest.mark.unit
    def test_completed_request_logged_with_masked_token(self) -> None:
        """שורת לוג אחת עם סטטוס, וה-access_token מוסתר"""
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with patch("app.core.middleware.logger") as mock_logger, TestClient(app) as client:
            response = client.get("/test?access_token=EAAB")

        assert response.status_code == 200
        mock_logger.info.assert_called_once()
        extra = mock_logger.info.call_args.kwargs["extra_data"]
        assert extra["status_code"] == 200
        assert extra["query_params"] == {"access_token": "***"}

    @pytest.mark.unit
    def test_health_probe_logged_at_debug(self) -> None:
        app = _build_app(
            routes=[Route("/health", _hello)],
            middlewares=[(RequestLoggingMiddleware, {})],
        )
        with patch("app.core.middleware.logger") as mock_logger, TestClient(app) as client:
            client.get("/health")

        mock_logger.debug.assert_called_once()
        mock_logger.info.assert_not_called()

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        """exception ב-handler עולה מחדש"""
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/error")
            assert response.status_code == 500


# ============================================================================
# בדיקות WebhookRateLimitMiddleware
# ============================================================================


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestWebhookRateLimitMiddleware:
    """בדיקות להגבלת קצב webhook"""

    @pytest.mark.unit
    def test_allows_requests_under_limit(self) -> None:
        """בקשות מתחת ללימיט עוברות"""
        app = _build_app(
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 5, "window_seconds": 60})
            ]
        )
        with TestClient(app) as client:
            for _ in range(5):
                response = client.post("/webhook")
                assert response.status_code == 200

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self) -> None:
        """בקשות מעל הלימיט נחסמות עם 429 בפורמט השגיאה של השירות"""
        clock = _Clock()
        app = _build_app(
            middlewares=[
                (
                    WebhookRateLimitMiddleware,
                    {"max_requests": 3, "window_seconds": 60, "clock": clock},
                )
            ]
        )
        with TestClient(app) as client:
            for _ in range(3):
                assert client.post("/webhook").status_code == 200

            clock.now += 15
            response = client.post("/webhook")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "45"
        error = response.json()["error"]
        assert error["code"] == "ERR_1006"
        assert error["details"] == {"retry_after": 45}

    @pytest.mark.unit
    def test_window_reopens_after_expiry(self) -> None:
        clock = _Clock()
        app = _build_app(
            middlewares=[
                (
                    WebhookRateLimitMiddleware,
                    {"max_requests": 1, "window_seconds": 60, "clock": clock},
                )
            ]
        )
        with TestClient(app) as client:
            assert client.post("/webhook").status_code == 200
            assert client.post("/webhook").status_code == 429

            clock.now += 61
            assert client.post("/webhook").status_code == 200

    @pytest.mark.unit
    def test_alias_path_shares_limit(self) -> None:
        """/api/meta/webhook הוא אותו webhook — אותה מכסה"""
        app = _build_app(
            routes=[
                Route("/webhook", _webhook, methods=["POST"]),
                Route("/api/meta/webhook", _webhook, methods=["POST"]),
            ],
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})
            ],
        )
        with TestClient(app) as client:
            assert client.post("/webhook").status_code == 200
            assert client.post("/api/meta/webhook").status_code == 429

    @pytest.mark.unit
    def test_non_webhook_paths_not_limited(self) -> None:
        """paths שאינם ה-webhook של Meta לא מוגבלים"""
        app = _build_app(
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})
            ]
        )
        with TestClient(app) as client:
            assert client.get("/webhook").status_code == 200
            assert client.get("/webhook").status_code == 429

            assert client.get("/test").status_code == 200
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_admin_webhook_events_not_limited(self) -> None:
        """/api/webhook-events הוא endpoint ניהול, לא webhook"""
        app = _build_app(
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})
            ]
        )
        with TestClient(app) as client:
            for _ in range(3):
                assert client.get("/api/webhook-events").status_code == 200

    @pytest.mark.unit
    def test_429_response_includes_correlation_id(self) -> None:
        """תשובת 429 כוללת X-Correlation-ID"""
        app = _build_app(
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60}),
                (CorrelationIdMiddleware, {}),
            ]
        )
        with TestClient(app) as client:
            client.post("/webhook")
            response = client.post("/webhook")

            assert response.status_code == 429
            assert "x-correlation-id" in response.headers


# ============================================================================
# בדיקות Exception Handlers
# ============================================================================


class TestAppExceptionHandler:
    """בדיקות ל-app_exception_handler"""

    @pytest.mark.asyncio
    async def test_handles_app_exception(self) -> None:
        """מטפל ב-AppException ומחזיר JSON תקין"""
        exc = AppException(
            message="Queue item m_1 not found",
            error_code=ErrorCode.QUEUE_ITEM_NOT_FOUND,
            status_code=404,
            details={"message_id": "m_1"},
        )

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/integration/status/m_1"

        response = await app_exception_handler(mock_request, exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers
        assert b"ERR_3001" in response.body

    @pytest.mark.asyncio
    async def test_handles_validation_exception(self) -> None:
        """מטפל ב-ValidationException"""
        from app.core.exceptions import ValidationException

        exc = ValidationException(
            message="Missing required fields",
            field="messageId",
        )

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/integration/callback"

        response = await app_exception_handler(mock_request, exc)

        assert response.status_code == 400


class TestGenericExceptionHandler:
    """בדיקות ל-generic_exception_handler"""

    @pytest.mark.asyncio
    async def test_does_not_leak_internal_details(self) -> None:
        """מחזיר 500 בלי לחשוף פרטים פנימיים"""
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/test"

        response = await generic_exception_handler(mock_request, exc)

        assert response.status_code == 500
        assert "x-correlation-id" in response.headers
        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert "ERR_1000" in body


# ============================================================================
# בדיקות setup_middleware
# ============================================================================


class TestSetupMiddleware:
    """בדיקות ל-setup_middleware"""

    @pytest.mark.asyncio
    async def test_full_middleware_stack(self, test_client) -> None:
        """כל ה-middleware stack עובד יחד — בדיקה דרך test_client"""
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

    @pytest.mark.asyncio
    async def test_webhook_through_full_stack(self, test_client) -> None:
        """handshake של Meta עובר דרך ה-stack המלא (rate limit גבוה)"""
        response = await test_client.get(
            "/webhook",
            params={
                "hub.mode": "subscribe",
                "hub.verify_token": TEST_VERIFY_TOKEN,
                "hub.challenge": "1158201444",
            },
        )
        assert response.status_code == 200
        assert response.text == "1158201444"
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"
