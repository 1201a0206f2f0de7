"""
Redis Client — async singleton לשימוש כללי (מונים, היסטוריית התראות).

משתמש ב-REDIS_URL מהקונפיגורציה (ברירת מחדל: redis://localhost:6379/0).

משימות Celery מריצות כל משימה ב-event loop חדש (run_async), ו-connection
pool של redis.asyncio קשור ל-loop שבו נוצר. לכן ה-client נשמר יחד עם
ה-loop שלו ונוצר מחדש כשה-loop הנוכחי שונה.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton של ה-loop הנוכחי (async, connection pool)."""
    global _redis_client, _redis_loop
    loop = asyncio.get_running_loop()
    if _redis_client is not None and _redis_loop is loop:
        return _redis_client

    client = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
    )
    await client.ping()
    # request מקבילי באותו loop אולי כבר אתחל בזמן ה-ping
    if _redis_client is not None and _redis_loop is loop:
        await client.aclose()
        return _redis_client

    _redis_client = client
    _redis_loop = loop
    logger.info("Redis client initialized", extra_data={
        "url": _mask_redis_url(settings.REDIS_URL),
    })
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis — לקרוא ב-app shutdown ובסוף משימת Celery."""
    global _redis_client, _redis_loop
    if _redis_client is not None:
        if _redis_loop is asyncio.get_running_loop():
            await _redis_client.aclose()
        _redis_client = None
        _redis_loop = None
        logger.info("Redis connection closed")
