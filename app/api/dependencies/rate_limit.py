"""
Rate limit ל-callback של n8n — חלון קבוע לפי IP.

ברירת מחדל: 100 בקשות לכל 15 דקות. החלונות נשמרים ב-ExpiringStateStore,
כך שחלון שהסתיים נעלם לבד ואין dict שגדל בלי גבול.
"""
from fastapi import HTTPException, Request, status

from app.core.config import settings
from app.core.logging import get_logger
from app.core.state_store import FixedWindowRateLimiter

logger = get_logger(__name__)

callback_rate_limiter = FixedWindowRateLimiter(
    settings.CALLBACK_RATE_LIMIT_MAX_REQUESTS,
    settings.CALLBACK_RATE_LIMIT_WINDOW_SECONDS,
)


async def limit_callback_rate(request: Request) -> None:
    """Dependency: 429 + Retry-After כשה-IP חרג מהמכסה"""
    client_ip = request.client.host if request.client else "unknown"
    allowed, retry_after = callback_rate_limiter.hit(client_ip)
    if allowed:
        return

    logger.warning(
        "Rate limit exceeded for integration callback",
        extra_data={
            "client_ip": client_ip,
            "limit": callback_rate_limiter.max_requests,
            "window_seconds": callback_rate_limiter.window_seconds,
        },
    )
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "error": "Too many requests, please try again later.",
            "retryAfter": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )
