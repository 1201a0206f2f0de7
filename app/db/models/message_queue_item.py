"""
Message Queue Item Model - עבודת הודעה יוצאת אחת (forward → reply → deliver).

external_message_id (ה-mid של Meta) ייחודי: webhook שנשלח שוב עם אותה הודעה
לא יוצר פריט נוסף.
"""
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum as SQLEnum,
    Text,
    ForeignKey,
    Index,
)

from app.db.database import Base, utcnow


class QueueItemStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY_TO_SEND = "ready_to_send"
    SENT = "sent"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


# סטטוסים סופיים — callback לא מתקבל, cleanup מוחק לפי גיל
TERMINAL_STATUSES = (QueueItemStatus.SENT, QueueItemStatus.DEAD_LETTER)


class QueueItem(Base):
    """שורה בטבלת message_processing_queue"""

    __tablename__ = "message_processing_queue"

    id = Column(Integer, primary_key=True, index=True)
    webhook_event_id = Column(
        Integer, ForeignKey("webhook_events.id", ondelete="SET NULL"), nullable=True
    )

    page_id = Column(String(64), nullable=False, index=True)
    external_conversation_id = Column(String(64), nullable=False)
    sender_id = Column(String(64), nullable=False)
    recipient_id = Column(String(64), nullable=False)
    message_text = Column(Text, nullable=False, default="")
    external_message_id = Column(String(255), nullable=False, unique=True)

    status = Column(
        SQLEnum(
            QueueItemStatus,
            name="queue_item_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=QueueItemStatus.PENDING,
        nullable=False,
    )

    # תשובת n8n
    ai_response = Column(Text, nullable=True)
    external_status = Column(String(50), nullable=True)       # "success" / "error" כפי שדווח ב-callback
    external_execution_id = Column(String(255), nullable=True)

    # Retry tracking
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    last_error = Column(Text, nullable=True)
    last_retry_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    # Timestamps
    sent_to_external_at = Column(DateTime, nullable=True)
    received_from_external_at = Column(DateTime, nullable=True)
    sent_to_platform_at = Column(DateTime, nullable=True)
    platform_message_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_message_queue_status_next_retry", "status", "next_retry_at"),
        Index("ix_message_queue_created_at", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
