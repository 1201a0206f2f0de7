"""
Webhook Event Model - רישום עמיד של כל webhook חתום שהתקבל מ-Meta.

ה-payload נשמר כמו שהוא ולא משתנה. רק status / retry_count / last_error /
processing_started_at / processed_at מתעדכנים לאורך מחזור החיים:
pending → processing → processed | failed → (retry) → processing ... → dead_letter
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Text, Index

from app.db.database import Base, utcnow


class WebhookEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class WebhookEvent(Base):
    """webhook נכנס אחד (POST חתום)"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    page_id = Column(String(64), nullable=True, index=True)  # platform page id מתוך entry[0].id
    event_type = Column(String(50), nullable=False)           # "instagram" / "page"
    payload = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(
            WebhookEventStatus,
            name="webhook_event_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=WebhookEventStatus.PENDING,
        nullable=False,
    )
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    received_at = Column(DateTime, default=utcnow, nullable=False)
    # נקבע ב-mark_processing; אירוע שתקוע ב-processing מעבר לסף חוזר ל-pending
    processing_started_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status_received", "status", "received_at"),
    )
