"""
Message Extractor - פענוח payload של webhook מ-Meta לרשומת הודעה אחידה.

המבנה הצפוי:
    {"object": "instagram", "entry": [{"id": "...", "messaging": [{
        "sender": {"id": "..."}, "recipient": {"id": "..."},
        "timestamp": 1700000000000,
        "message": {"mid": "...", "text": "..."}}]}]}

אישורי מסירה/קריאה, postbacks, echo של הודעות שהעמוד עצמו שלח ו-payload
שבור הם מקרים של "אין מה לעשות": מחזירים None ולא זורקים.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from app.core.logging import get_logger

logger = get_logger(__name__)


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _Party(_Lenient):
    id: str | None = None


class _Message(_Lenient):
    mid: str | None = None
    text: str | None = None
    is_echo: bool = False


class _Messaging(_Lenient):
    sender: _Party | None = None
    recipient: _Party | None = None
    timestamp: int | None = None
    message: _Message | None = None


class _Entry(_Lenient):
    id: str | None = None
    messaging: list[_Messaging] = []


class _Envelope(_Lenient):
    object: str | None = None
    entry: list[_Entry] = []


class MessageData(BaseModel):
    """הודעה נכנסת מנורמלת"""

    model_config = ConfigDict(frozen=True)

    conversation_id: str      # entry[0].id — חשבון ה-Instagram / ה-Page שקיבל את ההודעה
    sender_id: str
    recipient_id: str
    message_text: str
    message_id: str           # message.mid
    timestamp: int | None = None

    def to_processor_payload(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "senderId": self.sender_id,
            "recipientId": self.recipient_id,
            "messageText": self.message_text,
            "timestamp": self.timestamp,
        }


def event_type_of(payload: Any) -> str:
    """סוג האירוע לפי שדה object (instagram / page), או "unknown" """
    if isinstance(payload, dict) and isinstance(payload.get("object"), str):
        return payload["object"]
    return "unknown"


def page_id_of(payload: Any) -> str | None:
    """entry[0].id אם קיים — לשיוך אירוע לדף, best effort"""
    try:
        envelope = _Envelope.model_validate(payload)
    except ValidationError:
        return None
    return envelope.entry[0].id if envelope.entry else None


def extract_message_data(payload: Any) -> MessageData | None:
    """
    חילוץ ההודעה הראשונה מה-payload.

    Returns:
        MessageData, או None כשאין הודעת טקסט נכנסת לעבד.
    """
    try:
        envelope = _Envelope.model_validate(payload)
    except ValidationError as e:
        logger.warning(
            "Invalid webhook payload structure",
            extra_data={"errors": e.error_count()},
        )
        return None

    if not envelope.entry:
        logger.warning("Webhook payload has no entries")
        return None

    entry = envelope.entry[0]
    if not entry.messaging:
        logger.debug("No messaging data in webhook entry", extra_data={"entry_id": entry.id})
        return None

    messaging = entry.messaging[0]
    if messaging.message is None:
        # delivery / read receipts, postbacks
        logger.debug(
            "Webhook entry is not a message",
            extra_data={"entry_id": entry.id},
        )
        return None

    if messaging.message.is_echo:
        logger.debug("Skipping echo of outbound message", extra_data={"mid": messaging.message.mid})
        return None

    sender_id = messaging.sender.id if messaging.sender else None
    recipient_id = messaging.recipient.id if messaging.recipient else None
    if not (entry.id and sender_id and recipient_id and messaging.message.mid):
        logger.warning(
            "Webhook message is missing identifiers",
            extra_data={
                "has_entry_id": bool(entry.id),
                "has_sender": bool(sender_id),
                "has_recipient": bool(recipient_id),
                "has_mid": bool(messaging.message.mid),
            },
        )
        return None

    return MessageData(
        conversation_id=entry.id,
        sender_id=sender_id,
        recipient_id=recipient_id,
        message_text=messaging.message.text or "",
        message_id=messaging.message.mid,
        timestamp=messaging.timestamp,
    )
