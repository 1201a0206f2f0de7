"""
Page Service - גישה לדפים, חשבונות Instagram ו-audit של רענון טוקנים.

השירות רק קורא credentials לצורך שליחה; את מחזור החיים שלהם (OAuth,
חיבור דפים) מנהלים מחוץ לשירות. החריגים: בחירת הדף הפעיל (טרנזקציה
מפורשת) ועדכון טוקן אחרי רענון מתוזמן.
"""
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import PageNotFoundError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.instagram_account import InstagramAccount
from app.db.models.page import Page
from app.db.models.token_refresh_log import TokenRefreshLog

logger = get_logger(__name__)


class PageService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, page_db_id: int) -> Page | None:
        result = await self.db.execute(select(Page).where(Page.id == page_db_id))
        return result.scalar_one_or_none()

    async def find_by_user_id(self, user_id: int) -> list[Page]:
        result = await self.db.execute(
            select(Page)
            .where(Page.user_id == user_id)
            .order_by(Page.is_selected.desc(), Page.created_at.desc())
        )
        return list(result.scalars().all())

    async def find_selected_by_user_id(self, user_id: int) -> Page | None:
        result = await self.db.execute(
            select(Page)
            .where(Page.user_id == user_id, Page.is_selected.is_(True))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_platform_page_id(self, platform_page_id: str) -> Page | None:
        """דף לפי ה-id של Meta. אם כמה משתמשים חיברו אותו דף — עדיפות לנבחר."""
        result = await self.db.execute(
            select(Page)
            .where(Page.platform_page_id == platform_page_id)
            .order_by(Page.is_selected.desc(), Page.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_instagram_account(self, instagram_id: str) -> InstagramAccount | None:
        result = await self.db.execute(
            select(InstagramAccount).where(InstagramAccount.instagram_id == instagram_id)
        )
        return result.scalar_one_or_none()

    async def find_instagram_account_by_page(self, page_db_id: int) -> InstagramAccount | None:
        result = await self.db.execute(
            select(InstagramAccount).where(InstagramAccount.page_id == page_db_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def resolve_for_channel(self, channel_id: str) -> Page | None:
        """
        מציאת הדף שקיבל את ההודעה.

        ב-Messenger ‏entry[0].id הוא ה-page id; ב-Instagram הוא ה-id של
        חשבון ה-Instagram Business, שממופה לדף דרך instagram_accounts.
        """
        page = await self.find_by_platform_page_id(channel_id)
        if page is not None:
            return page
        account = await self.find_instagram_account(channel_id)
        if account is None:
            return None
        return await self.find_by_id(account.page_id)

    async def set_selected(self, user_id: int, page_db_id: int) -> Page:
        """
        בחירת הדף הפעיל של המשתמש (מבטל בחירה בשאר הדפים) בטרנזקציה אחת.

        Raises:
            PageNotFoundError: אם הדף לא שייך למשתמש. שום שינוי לא נשמר.
        """
        try:
            await self.db.execute(
                update(Page)
                .where(Page.user_id == user_id)
                .values(is_selected=False)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(
                update(Page)
                .where(Page.id == page_db_id, Page.user_id == user_id)
                .values(is_selected=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PageNotFoundError(page_db_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        page = await self.find_by_id(page_db_id)
        await self.db.refresh(page)
        logger.info(
            "Selected page changed",
            extra_data={"user_id": user_id, "page_id": page_db_id},
        )
        return page

    async def update_token(self, page_db_id: int, new_token: str, expires_at: datetime | None) -> None:
        await self.db.execute(
            update(Page)
            .where(Page.id == page_db_id)
            .values(page_access_token=new_token, token_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def find_expiring_tokens(self, days: int) -> list[Page]:
        """דפים שהטוקן שלהם פג בתוך days ימים (ועוד לא פג)"""
        now = utcnow()
        result = await self.db.execute(
            select(Page)
            .where(
                Page.token_expires_at.is_not(None),
                Page.token_expires_at > now,
                Page.token_expires_at <= now + timedelta(days=days),
            )
            .order_by(Page.token_expires_at.asc())
        )
        return list(result.scalars().all())

    async def log_token_refresh(
        self,
        page_db_id: int,
        *,
        refresh_type: str,
        success: bool,
        old_expires_at: datetime | None,
        new_expires_at: datetime | None = None,
        error_message: str | None = None,
    ) -> TokenRefreshLog:
        entry = TokenRefreshLog(
            page_id=page_db_id,
            refresh_type=refresh_type,
            success=success,
            old_expires_at=old_expires_at,
            new_expires_at=new_expires_at,
            error_message=error_message,
        )
        self.db.add(entry)
        await self.db.commit()
        return entry
