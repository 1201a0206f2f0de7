"""
שירות בדיקת בריאות — בדיקות תלויות (DB, Redis, Celery broker, תצורת n8n).

שתי רמות:
- liveness: התהליך חי (ללא תלויות)
- readiness: בדיקה של כל התלויות
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"
_CHECK_DISABLED = "disabled"

# הודעות מסוננות — בלי פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"
_ERROR_PROCESSOR_CONFIG = "error: n8n_not_configured"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """ping ל-broker של Celery"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY


def _check_processor_config() -> str:
    # לא שולחים בקשה ל-webhook של n8n: כל POST מפעיל את ה-workflow
    if not settings.N8N_ENABLED:
        return _CHECK_DISABLED
    if not settings.N8N_WEBHOOK_URL or not settings.N8N_CALLBACK_SECRET:
        return _ERROR_PROCESSOR_CONFIG
    return _CHECK_OK


async def check_readiness() -> dict[str, Any]:
    """
    Returns:
        {"status": "healthy" | "degraded", "db", "redis", "celery", "n8n"}
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
        "n8n": _check_processor_config(),
    }

    all_ok = all(v in (_CHECK_OK, _CHECK_DISABLED) for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("בדיקת מוכנות — המערכת במצב degraded", extra_data=checks)

    return {"status": overall_status, **checks}
