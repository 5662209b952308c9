"""
Dodo Payments webhook payload models
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    """Closed set of event kinds the ledger reacts to"""
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_ENDED = "subscription_ended"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"


EVENT_KINDS: Dict[str, EventKind] = {
    "subscription.active": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription.created": EventKind.SUBSCRIPTION_ACTIVATED,
    "subscription.renewed": EventKind.SUBSCRIPTION_RENEWED,
    "subscription.cancelled": EventKind.SUBSCRIPTION_ENDED,
    "subscription.expired": EventKind.SUBSCRIPTION_ENDED,
    "payment.succeeded": EventKind.PAYMENT_COMPLETED,
    "payment.completed": EventKind.PAYMENT_COMPLETED,
    "payment.failed": EventKind.PAYMENT_FAILED,
}


def classify_event(event_type: Optional[str]) -> EventKind:
    normalized = (event_type or "").strip().lower()
    return EVENT_KINDS.get(normalized, EventKind.UNKNOWN)


class DodoCustomer(BaseModel):
    model_config = ConfigDict(extra="allow")

    customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class DodoProductLine(BaseModel):
    model_config = ConfigDict(extra="allow")

    product_id: Optional[str] = None
    quantity: int = 1


class DodoEventData(BaseModel):
    """Fields of `data` the handlers read; everything else is kept as extra"""
    model_config = ConfigDict(extra="allow")

    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    product_id: Optional[str] = None
    product_cart: Optional[List[DodoProductLine]] = None
    customer_id: Optional[str] = None
    customer: Optional[DodoCustomer] = None
    customer_email: Optional[str] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None
    next_billing_date: Optional[str] = None

    @property
    def email(self) -> Optional[str]:
        if self.customer and self.customer.email:
            return self.customer.email
        return self.customer_email

    @property
    def resolved_customer_id(self) -> Optional[str]:
        if self.customer_id:
            return self.customer_id
        return self.customer.customer_id if self.customer else None

    @property
    def resolved_product_id(self) -> Optional[str]:
        """product_id, falling back to the first cart line of one-time payments"""
        if self.product_id:
            return self.product_id
        for line in self.product_cart or []:
            if line.product_id:
                return line.product_id
        return None

    @property
    def failure_message(self) -> Optional[str]:
        return self.failure_reason or self.error_message


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(..., min_length=1)
    data: DodoEventData = Field(default_factory=DodoEventData)
    business_id: Optional[str] = None
    timestamp: Optional[str] = None

    @property
    def kind(self) -> EventKind:
        return classify_event(self.type)
