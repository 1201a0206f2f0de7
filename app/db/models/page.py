"""
Page Model - ערוץ (Facebook Page) שמחובר ל-Instagram ומחזיק את ה-access token.

ניהול הדפים עצמו (OAuth, CRUD) נעשה מחוץ לשירות; כאן הטבלה משמשת לשליפת
credentials לשליחה, לבחירת הדף הפעיל ולרענון טוקנים.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, UniqueConstraint

from app.db.database import Base, utcnow


class Page(Base):
    """Facebook Page של משתמש"""

    __tablename__ = "pages"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    platform_page_id = Column(String(64), nullable=False, index=True)  # Meta page id
    name = Column(String(255), nullable=True)
    page_access_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=True)
    is_selected = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "platform_page_id", name="uq_pages_user_page"),
    )
