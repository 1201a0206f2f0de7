"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Webhook events (2xxx)
    WEBHOOK_EVENT_NOT_FOUND = "ERR_2001"
    WEBHOOK_EVENT_INVALID_STATUS = "ERR_2002"

    # Message processing queue (3xxx)
    QUEUE_ITEM_NOT_FOUND = "ERR_3001"
    QUEUE_ITEM_INVALID_STATUS = "ERR_3002"
    QUEUE_ITEM_TERMINAL = "ERR_3003"

    # Pages / accounts (4xxx)
    PAGE_NOT_FOUND = "ERR_4001"
    PAGE_TOKEN_MISSING = "ERR_4002"

    # External service errors (5xxx)
    GRAPH_API_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class WebhookEventNotFoundError(NotFoundException):
    """Raised when a webhook event id is unknown"""

    def __init__(self, event_id: int):
        super().__init__(
            resource="WebhookEvent",
            identifier=event_id,
            error_code=ErrorCode.WEBHOOK_EVENT_NOT_FOUND,
        )


class QueueItemNotFoundError(NotFoundException):
    """Raised when no queue item matches the given id / external message id"""

    def __init__(self, identifier: int | str):
        super().__init__(
            resource="QueueItem",
            identifier=identifier,
            error_code=ErrorCode.QUEUE_ITEM_NOT_FOUND,
        )


class PageNotFoundError(NotFoundException):
    """Raised when a page is not registered locally"""

    def __init__(self, page_id: int | str):
        super().__init__(
            resource="Page",
            identifier=page_id,
            error_code=ErrorCode.PAGE_NOT_FOUND,
        )


class InvalidQueueStateError(AppException):
    """Raised when a queue item / webhook event is not in a state that allows the operation"""

    def __init__(
        self,
        identifier: int | str,
        current_status: str,
        allowed_statuses: list[str],
        error_code: ErrorCode = ErrorCode.QUEUE_ITEM_INVALID_STATUS,
    ):
        super().__init__(
            message=(
                f"{identifier} has status '{current_status}', "
                f"required one of {', '.join(allowed_statuses)}"
            ),
            error_code=error_code,
            status_code=409,
            details={
                "identifier": str(identifier),
                "current_status": current_status,
                "allowed_statuses": allowed_statuses,
            },
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class GraphApiError(ExternalServiceException):
    """
    כשלון קריאה ל-Graph API, אחרי סיווג.

    ``classification`` (GraphErrorClassification) קובע אם מנסים שוב:
    שגיאות לא-recoverable יוצאות מלולאת ה-retry מיד.
    """

    def __init__(
        self,
        classification: Any,
        operation: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            service_name="graph_api",
            message=f"Graph API error ({classification.type.value}): {classification.message}",
            error_code=ErrorCode.GRAPH_API_ERROR,
            details=details,
        )
        self.classification = classification
        self.details["operation"] = operation
        self.details["error_type"] = classification.type.value
        self.details["recoverable"] = classification.recoverable

    @property
    def recoverable(self) -> bool:
        return self.classification.recoverable
