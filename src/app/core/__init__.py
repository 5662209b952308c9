"""Core package

Only light symbols are exported to avoid import cycles between modules.
"""
from .config import settings
from .responses import (
    WebhookResponse, success_response, error_response,
    BusinessException, MalformedPayloadException, SignatureException,
    LedgerPersistenceError, DuplicatePaymentError,
)

__all__ = [
    'settings',
    'WebhookResponse',
    'success_response',
    'error_response',
    'BusinessException',
    'MalformedPayloadException',
    'SignatureException',
    'LedgerPersistenceError',
    'DuplicatePaymentError',
]
