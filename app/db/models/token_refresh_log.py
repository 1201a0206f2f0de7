"""
Token Refresh Log Model - audit של כל ניסיון רענון טוקן (מוצלח או לא)
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, ForeignKey

from app.db.database import Base, utcnow


class TokenRefreshLog(Base):
    __tablename__ = "token_refresh_log"

    id = Column(Integer, primary_key=True, index=True)
    page_id = Column(Integer, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True)
    refresh_type = Column(String(20), nullable=False)  # scheduled / manual
    success = Column(Boolean, nullable=False)
    old_expires_at = Column(DateTime, nullable=True)
    new_expires_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
