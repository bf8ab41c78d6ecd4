"""
Exception hierarchy for the webhook pipeline.

Every AppException carries an ErrorCode and an HTTP status; the API layer
turns it into `{"error": {"code", "message", "details"}}` (see middleware).
"""
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    INTERNAL_ERROR = "ERR_1000"

    # Webhook pipeline (2xxx)
    INVALID_SIGNATURE = "ERR_2001"
    DUPLICATE_EVENT = "ERR_2002"
    EVENT_NOT_FOUND = "ERR_2003"
    INVALID_EVENT_TRANSITION = "ERR_2004"
    HANDLER_TIMEOUT = "ERR_2005"

    # External services (5xxx)
    TELEGRAM_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"


class AppException(Exception):
    """Base application error; subclasses override the class-level defaults."""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details,
            }
        }


class InvalidSignatureError(AppException):
    """Webhook body failed verification; nothing has been stored."""

    error_code = ErrorCode.INVALID_SIGNATURE
    status_code = 401

    def __init__(self, reason: str):
        super().__init__("Webhook signature verification failed", {"reason": reason})
        self.reason = reason


class DuplicateEventError(AppException):
    error_code = ErrorCode.DUPLICATE_EVENT
    status_code = 409

    def __init__(self, event_id: str):
        super().__init__(f"Webhook event already recorded: {event_id}", {"event_id": event_id})
        self.event_id = event_id


class EventNotFoundError(AppException):
    error_code = ErrorCode.EVENT_NOT_FOUND
    status_code = 404

    def __init__(self, event_id: str):
        super().__init__(f"Webhook event not found: {event_id}", {"event_id": event_id})
        self.event_id = event_id


class InvalidEventTransitionError(AppException):
    """The event's current status does not allow the requested move."""

    error_code = ErrorCode.INVALID_EVENT_TRANSITION
    status_code = 409

    def __init__(self, event_id: str, current_status: str, target_status: str):
        super().__init__(
            f"Webhook event {event_id} is '{current_status}', cannot move to '{target_status}'",
            {
                "event_id": event_id,
                "current_status": current_status,
                "target_status": target_status,
            },
        )
        self.event_id = event_id
        self.current_status = current_status


class HandlerTimeoutError(AppException):
    error_code = ErrorCode.HANDLER_TIMEOUT
    status_code = 504

    def __init__(self, event_type: str, timeout_seconds: float):
        super().__init__(
            f"Handler for {event_type} timed out after {timeout_seconds}s",
            {"event_type": event_type, "timeout_seconds": timeout_seconds},
        )


class ExternalServiceException(AppException):
    error_code = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE
    status_code = 503

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, {**(details or {}), "service": service_name})
        self.service_name = service_name


class TelegramError(ExternalServiceException):
    error_code = ErrorCode.TELEGRAM_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__("telegram", f"Telegram API error: {message}", details)

    @classmethod
    def from_response(cls, operation: str, response: Any, *, max_response_chars: int = 500) -> "TelegramError":
        """בונה שגיאה מתשובת HTTP (httpx.Response) - גוף התשובה נחתך"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            f"{operation} returned status {status_code}",
            {
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CircuitBreakerOpenError(ExternalServiceException):
    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name,
            f"{service_name} is temporarily unavailable (circuit breaker open)",
            {"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds
