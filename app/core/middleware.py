"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging (tokens and secrets in query strings are masked,
  health probes only at debug level)
- Global error handling in the {"error": {code, message, details}} shape
- Security headers for a JSON-only API
- Rate limiting for the Meta webhook endpoint
"""
import time
from typing import Any, Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode
from app.core.state_store import FixedWindowRateLimiter

logger = get_logger(__name__)

# פרמטרי query שלא נכתבים ללוג (handshake של Meta, טוקנים)
_MASKED_QUERY_PARAMS = frozenset({"hub.verify_token", "access_token"})

# liveness / readiness נקראים כל כמה שניות — לא מציפים את הלוג
_PROBE_PATHS = frozenset({"/health", "/health/ready"})

# הכתובות ש-Meta שולחת אליהן (canonical + alias)
WEBHOOK_PATHS = frozenset({"/webhook", "/api/meta/webhook"})

# תשובות עם נתוני תור / דפים / callback לא נשמרות ב-cache
_NO_STORE_PREFIXES = ("/api/", "/integration/")


def _safe_query_params(request: Request) -> dict[str, str]:
    """query params ללוג — ערכים רגישים מוחלפים ב-***"""
    return {
        key: "***" if key in _MASKED_QUERY_PARAMS else value
        for key, value in request.query_params.items()
    }


def error_response(
    status_code: int,
    code: ErrorCode,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code.value,
                "message": message,
                "details": details or {},
            }
        },
        headers={"X-Correlation-ID": get_correlation_id(), **(headers or {})},
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """שורת לוג אחת לכל בקשה, אחרי שהתשובה מוכנה"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start = time.perf_counter()
        path = request.url.path
        log_data = {
            "method": request.method,
            "path": path,
            "query_params": _safe_query_params(request),
            "client_host": request.client.host if request.client else None,
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    **log_data,
                    "duration_seconds": round(time.perf_counter() - start, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        if response.status_code >= 400:
            log = logger.warning
        elif path in _PROBE_PATHS:
            log = logger.debug
        else:
            log = logger.info
        log(
            f"Request completed: {request.method} {path}",
            extra_data={
                **log_data,
                "status_code": response.status_code,
                "duration_seconds": round(time.perf_counter() - start, 4),
            }
        )
        return response


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions. פרטי החריגה נשארים בלוג בלבד."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )
    return error_response(500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    כותרות אבטחה. השירות מחזיר JSON בלבד (וטקסט ל-handshake של Meta):

    - X-Content-Type-Options: nosniff, X-Frame-Options: DENY,
      Referrer-Policy: no-referrer — תמיד.
    - Cache-Control: no-store על /api ו-/integration.
    - Strict-Transport-Security — רק כשלא במצב DEBUG (לא לחסום HTTP מקומי).
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith(_NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
        if not self._debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting ל-webhook של Meta — חלון קבוע לפי IP.

    רק WEBHOOK_PATHS מוגבלים (לא /api/webhook-events). ה-callback של n8n
    מוגבל בנפרד (app/api/dependencies/rate_limit.py) עם אותו מנגנון.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(app)
        self.limiter = FixedWindowRateLimiter(max_requests, window_seconds, clock=clock)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        path = request.url.path
        if path not in WEBHOOK_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        allowed, retry_after = self.limiter.hit(client_ip)
        if allowed:
            return await call_next(request)

        logger.warning(
            "Rate limit exceeded for webhook",
            extra_data={
                "client_ip": client_ip,
                "path": path,
                "limit": self.limiter.max_requests,
                "window_seconds": self.limiter.window_seconds,
            },
        )
        return error_response(
            429,
            ErrorCode.RATE_LIMITED,
            "Too many requests. Please try again later.",
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # ב-Starlette, ה-middleware האחרון שנוסף הוא ה-outermost.
    # סדר עיבוד בקשה: SecurityHeaders → CorrelationId → RequestLogging → RateLimit → app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
