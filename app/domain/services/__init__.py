"""
Domain Services
"""
from app.domain.services.event_store import EventStore
from app.domain.services.graph_api import GraphApiClient
from app.domain.services.message_queue_service import MessageQueueService
from app.domain.services.page_service import PageService
from app.domain.services.processor_client import ExternalProcessorClient
from app.domain.services.queue_processor import QueueProcessor

__all__ = [
    "EventStore",
    "GraphApiClient",
    "MessageQueueService",
    "PageService",
    "ExternalProcessorClient",
    "QueueProcessor",
]
