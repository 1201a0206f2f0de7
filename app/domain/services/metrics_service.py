"""
Metrics & Alerts — מונים משותפים ב-Redis והתראות לפי ספים.

המונים נשמרים ב-Redis hash אחד, כך שתהליך ה-web ו-workers של Celery
כותבים לאותה תמונה. כשלון בעדכון מונה נרשם ללוג ולא עוצר את העיבוד.

התראות:
- error_rate     > ALERT_ERROR_RATE_THRESHOLD       → critical
- dead_letter    > ALERT_DEAD_LETTER_THRESHOLD      → warning
- processor_errors > ALERT_PROCESSOR_ERROR_THRESHOLD → warning
- platform_errors  > ALERT_PLATFORM_ERROR_THRESHOLD  → warning
- avg_response_ms  > ALERT_RESPONSE_TIME_MS_THRESHOLD → warning
"""
import enum
import json
from datetime import datetime, timezone
from typing import Any

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)

_METRICS_KEY = "inbox_relay:metrics"
_ALERT_HISTORY_KEY = "inbox_relay:alert_history"
_STARTED_AT_FIELD = "started_at"


class Metric(str, enum.Enum):
    """מוני התור והאינטגרציה"""
    WEBHOOKS_RECEIVED = "webhooks_received"
    WEBHOOKS_PROCESSED = "webhooks_processed"
    WEBHOOKS_FAILED = "webhooks_failed"
    MESSAGES_RECEIVED = "messages_received"
    MESSAGES_FORWARDED = "messages_forwarded"
    MESSAGES_PROCESSED = "messages_processed"
    MESSAGES_FAILED = "messages_failed"
    MESSAGES_RETRIED = "messages_retried"
    DEAD_LETTER_COUNT = "dead_letter_count"
    PROCESSOR_ERRORS = "processor_errors"
    PLATFORM_ERRORS = "platform_errors"
    RESPONSE_TIME_TOTAL_MS = "response_time_total_ms"
    RESPONSE_TIME_SAMPLES = "response_time_samples"


class AlertLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


async def increment(metric: Metric, amount: int = 1) -> None:
    try:
        redis = await get_redis()
        await redis.hincrby(_METRICS_KEY, metric.value, amount)
        await redis.hsetnx(_METRICS_KEY, _STARTED_AT_FIELD, datetime.now(timezone.utc).isoformat())
    except Exception as e:
        logger.error(
            "כשלון בעדכון מונה",
            extra_data={"metric": metric.value, "error": str(e)},
        )


async def record_response_time(duration_ms: float) -> None:
    """זמן מקצה לקצה: קבלת ההודעה → שליחת התשובה ל-Instagram"""
    try:
        redis = await get_redis()
        await redis.hincrbyfloat(_METRICS_KEY, Metric.RESPONSE_TIME_TOTAL_MS.value, duration_ms)
        await redis.hincrby(_METRICS_KEY, Metric.RESPONSE_TIME_SAMPLES.value, 1)
    except Exception as e:
        logger.error(
            "כשלון ברישום זמן תגובה",
            extra_data={"duration_ms": duration_ms, "error": str(e)},
        )


async def get_metrics() -> dict[str, Any]:
    """כל המונים (0 למונה שעוד לא נרשם)"""
    redis = await get_redis()
    raw = await redis.hgetall(_METRICS_KEY)
    metrics: dict[str, Any] = {}
    for metric in Metric:
        value = raw.get(metric.value, 0)
        metrics[metric.value] = (
            float(value) if metric == Metric.RESPONSE_TIME_TOTAL_MS else int(value)
        )
    metrics[_STARTED_AT_FIELD] = raw.get(_STARTED_AT_FIELD)
    return metrics


def summarize(metrics: dict[str, Any]) -> dict[str, Any]:
    """שיעורי הצלחה/שגיאה וזמן תגובה ממוצע מתוך המונים"""
    processed = metrics.get(Metric.MESSAGES_PROCESSED.value, 0)
    failed = metrics.get(Metric.MESSAGES_FAILED.value, 0)
    attempts = processed + failed
    samples = metrics.get(Metric.RESPONSE_TIME_SAMPLES.value, 0)
    total_ms = metrics.get(Metric.RESPONSE_TIME_TOTAL_MS.value, 0.0)

    return {
        "messages_received": metrics.get(Metric.MESSAGES_RECEIVED.value, 0),
        "messages_forwarded": metrics.get(Metric.MESSAGES_FORWARDED.value, 0),
        "messages_processed": processed,
        "messages_failed": failed,
        "messages_retried": metrics.get(Metric.MESSAGES_RETRIED.value, 0),
        "dead_letter_count": metrics.get(Metric.DEAD_LETTER_COUNT.value, 0),
        "processor_errors": metrics.get(Metric.PROCESSOR_ERRORS.value, 0),
        "platform_errors": metrics.get(Metric.PLATFORM_ERRORS.value, 0),
        "success_rate": round(processed / attempts, 4) if attempts else None,
        "error_rate": round(failed / attempts, 4) if attempts else 0.0,
        "avg_response_time_ms": round(total_ms / samples, 2) if samples else None,
        "started_at": metrics.get(_STARTED_AT_FIELD),
    }


async def get_summary() -> dict[str, Any]:
    return summarize(await get_metrics())


async def reset_metrics() -> None:
    redis = await get_redis()
    await redis.delete(_METRICS_KEY)
    logger.info("Metrics reset")


def _alert(level: AlertLevel, name: str, message: str, value: Any, threshold: Any) -> dict[str, Any]:
    return {
        "level": level.value,
        "name": name,
        "message": message,
        "value": value,
        "threshold": threshold,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def check_alerts(summary: dict[str, Any], dead_letter_count: int | None = None) -> list[dict[str, Any]]:
    """
    בדיקת ספים מול snapshot של המונים.

    Args:
        summary: תוצאת summarize()
        dead_letter_count: ספירה עדכנית מה-DB (עדיפה על המונה המצטבר)
    """
    alerts: list[dict[str, Any]] = []

    error_rate = summary.get("error_rate") or 0.0
    if error_rate > settings.ALERT_ERROR_RATE_THRESHOLD:
        alerts.append(_alert(
            AlertLevel.CRITICAL,
            "high_error_rate",
            f"Error rate {error_rate:.0%} exceeds {settings.ALERT_ERROR_RATE_THRESHOLD:.0%}",
            error_rate,
            settings.ALERT_ERROR_RATE_THRESHOLD,
        ))

    dead_letters = summary.get("dead_letter_count", 0) if dead_letter_count is None else dead_letter_count
    if dead_letters > settings.ALERT_DEAD_LETTER_THRESHOLD:
        alerts.append(_alert(
            AlertLevel.WARNING,
            "dead_letter_backlog",
            f"{dead_letters} messages in dead letter queue",
            dead_letters,
            settings.ALERT_DEAD_LETTER_THRESHOLD,
        ))

    processor_errors = summary.get("processor_errors", 0)
    if processor_errors > settings.ALERT_PROCESSOR_ERROR_THRESHOLD:
        alerts.append(_alert(
            AlertLevel.WARNING,
            "processor_errors",
            f"{processor_errors} n8n errors",
            processor_errors,
            settings.ALERT_PROCESSOR_ERROR_THRESHOLD,
        ))

    platform_errors = summary.get("platform_errors", 0)
    if platform_errors > settings.ALERT_PLATFORM_ERROR_THRESHOLD:
        alerts.append(_alert(
            AlertLevel.WARNING,
            "platform_errors",
            f"{platform_errors} Graph API errors",
            platform_errors,
            settings.ALERT_PLATFORM_ERROR_THRESHOLD,
        ))

    avg_ms = summary.get("avg_response_time_ms")
    if avg_ms is not None and avg_ms > settings.ALERT_RESPONSE_TIME_MS_THRESHOLD:
        alerts.append(_alert(
            AlertLevel.WARNING,
            "slow_responses",
            f"Average response time {avg_ms:.0f}ms",
            avg_ms,
            settings.ALERT_RESPONSE_TIME_MS_THRESHOLD,
        ))

    return alerts


async def record_alerts(alerts: list[dict[str, Any]]) -> None:
    """כתיבת התראות ללוג ולהיסטוריה מוגבלת ב-Redis (LPUSH + LTRIM)"""
    if not alerts:
        return
    for alert in alerts:
        log = logger.error if alert["level"] == AlertLevel.CRITICAL.value else logger.warning
        log(f"Alert: {alert['name']}", extra_data=alert)
    try:
        redis = await get_redis()
        for alert in alerts:
            await redis.lpush(_ALERT_HISTORY_KEY, json.dumps(alert, ensure_ascii=False, default=str))
        await redis.ltrim(_ALERT_HISTORY_KEY, 0, settings.ALERT_HISTORY_LIMIT - 1)
    except Exception as e:
        logger.error(
            "כשלון בשמירת היסטוריית התראות",
            extra_data={"error": str(e)},
            exc_info=True,
        )


async def get_alert_history(limit: int = 50) -> list[dict[str, Any]]:
    """התראות אחרונות, מהחדשה לישנה"""
    redis = await get_redis()
    raw_items = await redis.lrange(_ALERT_HISTORY_KEY, 0, limit - 1)
    return [json.loads(item) for item in raw_items]
