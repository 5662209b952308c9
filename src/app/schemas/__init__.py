"""Request payload schemas"""
from .webhook import (
    EVENT_KINDS,
    DodoCustomer,
    DodoEventData,
    DodoProductLine,
    EventKind,
    WebhookPayload,
    classify_event,
)

__all__ = [
    "EVENT_KINDS",
    "DodoCustomer",
    "DodoEventData",
    "DodoProductLine",
    "EventKind",
    "WebhookPayload",
    "classify_event",
]
