"""
Webhook response model and exception classes
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the payment provider"""
    success: bool
    event: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "event": "payment.succeeded",
            }
        }


class BusinessException(Exception):
    """Base error carrying an HTTP status for the exception handlers"""
    def __init__(self, message: str, error_code: str = None, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class MalformedPayloadException(BusinessException):
    """Body is not JSON or lacks a usable event type"""
    def __init__(self, message: str = "malformed webhook payload"):
        super().__init__(message, "MALFORMED_PAYLOAD", 400)


class SignatureException(BusinessException):
    def __init__(self, message: str = "invalid signature"):
        super().__init__(message, "INVALID_SIGNATURE", 401)


class LedgerPersistenceError(BusinessException):
    """Store write or read failed; the sender must retry"""
    def __init__(self, operation: str, message: str = None):
        msg = message or f"{operation} failed"
        super().__init__(msg, "PERSISTENCE_ERROR", 500)
        self.operation = operation


class DuplicatePaymentError(BusinessException):
    """Unique constraint on a completed payment id was hit"""
    def __init__(self, payment_id: Optional[str]):
        super().__init__(f"payment {payment_id} already recorded", "DUPLICATE_PAYMENT", 409)
        self.payment_id = payment_id


def success_response(event: Optional[str] = None, data: Any = None) -> WebhookResponse:
    return WebhookResponse(success=True, event=event, data=data)


def error_response(
    error: str = "internal server error",
    error_code: str = None,
    event: Optional[str] = None,
) -> WebhookResponse:
    return WebhookResponse(success=False, error=error, error_code=error_code, event=event)
