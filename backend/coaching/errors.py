"""
Coaching pipeline exceptions.

Every error carries an error_code and an HTTP status so routes can turn it
into a response with `to_dict()`. Consumption errors are user-facing and
recoverable by purchasing again; routing and post-charge persistence errors
mean money already moved and must reach the logs and the reporting path.
"""

from typing import Optional

from .config import ERROR_CODES


class CoachingError(Exception):
    """Base class for all coaching pipeline errors."""

    error_code = "COACHING_ERROR"
    status_code = 500

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or ERROR_CODES.get(self.error_code, self.error_code)
        self.context = context
        super().__init__(self.message)

    def to_dict(self):
        """Convert to API response format."""
        payload = {
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.context:
            payload["details"] = self.context
        return payload


# ==================== VALIDATION ====================

class PaymentEventInvalid(CoachingError):
    error_code = "PAYMENT_EVENT_INVALID"
    status_code = 400


class PaymentNotSucceeded(CoachingError):
    error_code = "PAYMENT_NOT_SUCCEEDED"
    status_code = 400


class SignatureError(CoachingError):
    error_code = "INVALID_SIGNATURE"
    status_code = 400


class ConversationNotFound(CoachingError):
    error_code = "CONVERSATION_NOT_FOUND"
    status_code = 404


class ConversationConflict(CoachingError):
    error_code = "CONVERSATION_CONFLICT"
    status_code = 409


class AccountNotFound(CoachingError):
    error_code = "ACCOUNT_NOT_FOUND"
    status_code = 404


class EntitlementNotFound(CoachingError):
    error_code = "ENTITLEMENT_NOT_FOUND"
    status_code = 404


class PackageNotFoundError(CoachingError):
    error_code = "PACKAGE_NOT_FOUND"
    status_code = 400


class QuotaResolutionError(CoachingError):
    error_code = "QUOTA_RESOLUTION_FAILED"
    status_code = 400


# ==================== CONSUMPTION ====================

class ConsumptionError(CoachingError):
    """Raised by the conversation guard when a player write is refused."""


class ChatExpired(ConsumptionError):
    error_code = "CHAT_EXPIRED"
    status_code = 403


class ClipsExhausted(ConsumptionError):
    error_code = "CLIPS_EXHAUSTED"
    status_code = 402


class DailyLimitReached(ConsumptionError):
    error_code = "DAILY_LIMIT_REACHED"
    status_code = 429


# ==================== ROUTING ====================

class RoutingError(CoachingError):
    """Funds could not be routed to the provider. Never retried automatically."""


class RoutingUnavailable(RoutingError):
    error_code = "ROUTING_UNAVAILABLE"
    status_code = 400


class TransferFailed(RoutingError):
    error_code = "TRANSFER_FAILED"
    status_code = 502


# ==================== PERSISTENCE / PROCESSOR ====================

class EntitlementPersistFailure(CoachingError):
    """The charge succeeded but the entitlement could not be written."""

    error_code = "ENTITLEMENT_PERSIST_FAILED"
    status_code = 500

    def to_dict(self):
        payload = super().to_dict()
        payload["charge_succeeded"] = True
        return payload


class ProcessorError(CoachingError):
    """A payment processor call failed or timed out."""

    error_code = "PROCESSOR_ERROR"
    status_code = 502
