"""
Instagram Account Model - חשבון Instagram Business שמקושר ל-Page.

ב-webhooks של Instagram, entry[0].id הוא ה-instagram_id ולא ה-page id,
ולכן הטבלה משמשת למיפוי חזרה לדף ולטוקן שלו.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from app.db.database import Base, utcnow


class InstagramAccount(Base):
    __tablename__ = "instagram_accounts"

    id = Column(Integer, primary_key=True, index=True)
    page_id = Column(Integer, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True)
    instagram_id = Column(String(64), nullable=False, unique=True)
    username = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
