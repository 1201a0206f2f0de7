"""
Database Models
"""
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.db.models.message_queue_item import QueueItem, QueueItemStatus
from app.db.models.page import Page
from app.db.models.instagram_account import InstagramAccount
from app.db.models.token_refresh_log import TokenRefreshLog

__all__ = [
    "WebhookEvent",
    "WebhookEventStatus",
    "QueueItem",
    "QueueItemStatus",
    "Page",
    "InstagramAccount",
    "TokenRefreshLog",
]
