"""
Token Refresh Service - רענון page access tokens לפני שהם פגים.

רץ פעם ביום (Celery beat). כל דף שהטוקן שלו פג בתוך
TOKEN_REFRESH_THRESHOLD_DAYS מרוענן דרך fb_exchange_token, וכל ניסיון
נרשם ב-token_refresh_log. כשלון בדף אחד לא עוצר את השאר.
"""
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import GraphApiError
from app.core.logging import get_logger, log_async_operation
from app.db.database import utcnow
from app.domain.services.graph_api import GraphApiClient
from app.domain.services.page_service import PageService

logger = get_logger(__name__)

# ברירת מחדל של Meta לטוקן ארוך-טווח
_DEFAULT_EXPIRES_IN_SECONDS = 60 * 24 * 3600


@log_async_operation("refresh_expiring_tokens")
async def refresh_expiring_tokens(
    db: AsyncSession,
    *,
    graph: GraphApiClient | None = None,
    threshold_days: int | None = None,
    refresh_type: str = "scheduled",
) -> dict[str, int]:
    """
    Returns:
        {"checked": n, "refreshed": n, "failed": n}
    """
    graph = graph or GraphApiClient()
    pages = PageService(db)
    threshold_days = threshold_days or settings.TOKEN_REFRESH_THRESHOLD_DAYS

    expiring = await pages.find_expiring_tokens(threshold_days)
    refreshed = failed = 0

    for page in expiring:
        old_expires_at = page.token_expires_at
        try:
            token_data = await graph.exchange_token(page.page_access_token)
            new_token = token_data.get("access_token") if isinstance(token_data, dict) else None
            if not new_token:
                raise ValueError("token exchange returned no access_token")
            expires_in = int(token_data.get("expires_in") or _DEFAULT_EXPIRES_IN_SECONDS)
            new_expires_at = utcnow() + timedelta(seconds=expires_in)

            await pages.update_token(page.id, new_token, new_expires_at)
            await pages.log_token_refresh(
                page.id,
                refresh_type=refresh_type,
                success=True,
                old_expires_at=old_expires_at,
                new_expires_at=new_expires_at,
            )
            refreshed += 1
            logger.info(
                "Page token refreshed",
                extra_data={"page_id": page.id, "new_expires_at": new_expires_at},
            )
        except (GraphApiError, ValueError) as e:
            failed += 1
            await pages.log_token_refresh(
                page.id,
                refresh_type=refresh_type,
                success=False,
                old_expires_at=old_expires_at,
                error_message=str(e)[:1000],
            )
            logger.error(
                "Page token refresh failed",
                extra_data={"page_id": page.id, "error": str(e)},
            )

    return {"checked": len(expiring), "refreshed": refreshed, "failed": failed}
