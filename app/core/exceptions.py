"""
Custom Exception Hierarchy

Structured exceptions shared by the webhook pipeline, the notification
dispatcher and the subscription generator.
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
    CONFLICT = "ERR_1007"

    # Webhook errors (2xxx)
    INVALID_SIGNATURE = "ERR_2001"
    MALFORMED_PAYLOAD = "ERR_2002"
    NO_TRACKER_DATA = "ERR_2003"
    NO_TRACKING_DETAILS = "ERR_2004"

    # Order / notification errors (3xxx)
    ORDER_NOT_FOUND = "ERR_3001"
    NO_RECIPIENT_EMAIL = "ERR_3002"
    TEMPLATE_NOT_FOUND = "ERR_3003"
    TEMPLATE_RENDER_ERROR = "ERR_3004"

    # Subscription errors (4xxx)
    EMPTY_SUBSCRIPTION = "ERR_4001"
    INSUFFICIENT_STOCK = "ERR_4002"
    PRODUCT_UNAVAILABLE = "ERR_4003"
    BATCH_ALREADY_RUNNING = "ERR_4004"
    SUBSCRIPTION_NOT_FOUND = "ERR_4005"
    SUBSCRIPTION_NOT_ACTIVE = "ERR_4006"

    # External service errors (5xxx)
    EMAIL_PROVIDER_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


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


# ============================================================================
# Webhook ingestion
# ============================================================================

class WebhookException(AppException):
    """Base exception for tracking webhook errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        provider_event_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if provider_event_id:
            self.details["provider_event_id"] = provider_event_id


class InvalidSignatureError(WebhookException):
    """Raised when the HMAC signature of a webhook does not match"""

    def __init__(self, reason: str = "Invalid signature"):
        super().__init__(
            message=reason,
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=401,
        )


class MalformedPayloadError(WebhookException):
    """Raised when a webhook body is not JSON or has no event id"""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Malformed webhook payload: {reason}",
            error_code=ErrorCode.MALFORMED_PAYLOAD,
            status_code=400,
            details={"reason": reason}
        )


class NoTrackerDataError(WebhookException):
    """Raised when the webhook result carries no tracking code"""

    def __init__(self, provider_event_id: str | None = None):
        super().__init__(
            message="No tracker data in webhook",
            error_code=ErrorCode.NO_TRACKER_DATA,
            provider_event_id=provider_event_id
        )


class NoTrackingDetailsError(WebhookException):
    """Raised when the tracker has an empty tracking history"""

    def __init__(self, tracking_code: str, provider_event_id: str | None = None):
        super().__init__(
            message=f"No tracking details for tracker {tracking_code}",
            error_code=ErrorCode.NO_TRACKING_DETAILS,
            provider_event_id=provider_event_id,
            details={"tracking_code": tracking_code}
        )


# ============================================================================
# Orders & notifications
# ============================================================================

class OrderNotFoundError(NotFoundException):
    """Raised when an order cannot be loaded"""

    def __init__(self, order_id: int):
        super().__init__("Order", order_id, error_code=ErrorCode.ORDER_NOT_FOUND)
        self.order_id = order_id


class NoRecipientEmailError(AppException):
    """Raised when neither the order nor its profile has an email"""

    def __init__(self, order_id: int):
        super().__init__(
            message=f"No recipient email for order {order_id}",
            error_code=ErrorCode.NO_RECIPIENT_EMAIL,
            status_code=422,
            details={"order_id": order_id}
        )


class TemplateNotFoundError(NotFoundException):
    """Raised when no template exists for an event type"""

    def __init__(self, name: str):
        super().__init__("EmailTemplate", name, error_code=ErrorCode.TEMPLATE_NOT_FOUND)


class TemplateRenderError(AppException):
    """Raised when a template references variables that were not supplied"""

    def __init__(self, missing: list[str]):
        super().__init__(
            message=f"Unresolved template variables: {', '.join(missing)}",
            error_code=ErrorCode.TEMPLATE_RENDER_ERROR,
            status_code=422,
            details={"missing": missing}
        )
        self.missing = missing


# ============================================================================
# Subscriptions
# ============================================================================

class SubscriptionException(AppException):
    """Base exception for subscription order generation"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        subscription_id: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if subscription_id:
            self.details["subscription_id"] = subscription_id


class SubscriptionNotFoundError(NotFoundException):
    """Raised when a subscription no longer exists"""

    def __init__(self, subscription_id: int):
        super().__init__("Subscription", subscription_id, error_code=ErrorCode.SUBSCRIPTION_NOT_FOUND)
        self.subscription_id = subscription_id


class SubscriptionNotActiveError(SubscriptionException):
    """Raised when a subscription was paused or cancelled after it was listed as due"""

    def __init__(self, subscription_id: int, status: str):
        super().__init__(
            message=f"Subscription is {status}",
            error_code=ErrorCode.SUBSCRIPTION_NOT_ACTIVE,
            subscription_id=subscription_id,
            details={"status": status}
        )


class EmptySubscriptionError(SubscriptionException):
    """Raised when a subscription has no items"""

    def __init__(self, subscription_id: int):
        super().__init__(
            message="Subscription has no items",
            error_code=ErrorCode.EMPTY_SUBSCRIPTION,
            subscription_id=subscription_id
        )


class ProductUnavailableError(SubscriptionException):
    """Raised when a subscribed product is missing or inactive"""

    def __init__(self, subscription_id: int, product_id: int):
        super().__init__(
            message=f"Product {product_id} is no longer available",
            error_code=ErrorCode.PRODUCT_UNAVAILABLE,
            subscription_id=subscription_id,
            details={"product_id": product_id}
        )


class InsufficientStockError(SubscriptionException):
    """Raised when a tracked product has less stock than requested"""

    def __init__(
        self,
        subscription_id: int,
        product_name: str,
        available: int,
        requested: int
    ):
        super().__init__(
            message=f"Insufficient stock for {product_name}",
            error_code=ErrorCode.INSUFFICIENT_STOCK,
            subscription_id=subscription_id,
            details={
                "product_name": product_name,
                "available": available,
                "requested": requested,
            }
        )


class BatchAlreadyRunningError(AppException):
    """Raised when another subscription batch holds the run lock"""

    def __init__(self, lock_name: str):
        super().__init__(
            message="A subscription batch is already running",
            error_code=ErrorCode.BATCH_ALREADY_RUNNING,
            status_code=409,
            details={"lock": lock_name}
        )


# ============================================================================
# External services
# ============================================================================

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


class EmailProviderError(ExternalServiceException):
    """Raised when the transactional email API rejects a request"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="resend",
            message=f"Email provider error: {message}",
            error_code=ErrorCode.EMAIL_PROVIDER_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "EmailProviderError":
        """
        יצירת EmailProviderError מתוך HTTP response.

        Resend מחזיר {"name": ..., "message": ...} בשגיאה — ההודעה נשלפת אם קיימת.
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        message = f"send returned status {status_code}"
        try:
            body = response.json()
            if isinstance(body, dict) and body.get("message"):
                message = str(body["message"])
        except ValueError:
            pass
        return cls(
            message=message,
            details={
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
