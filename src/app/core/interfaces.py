"""
Store and directory interfaces consumed by the webhook handlers
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Optional


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of an atomic credit addition"""
    new_balance: int
    applied: bool = True


class ILedgerStore(ABC):
    """Relational store holding subscriptions, the credit ledger and payment history"""

    @abstractmethod
    async def has_completed_payment(self, payment_id: str) -> bool:
        """Whether a completed payment history row exists for this external id"""
        pass

    @abstractmethod
    async def has_credit_transaction(self, payment_id: str, transaction_type: str) -> bool:
        """Whether the ledger already holds a transaction for this external id and type"""
        pass

    @abstractmethod
    async def has_failed_payment(self, payment_id: str) -> bool:
        """Whether a failed payment history row exists for this external id"""
        pass

    @abstractmethod
    async def get_subscription_by_external_id(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def upsert_subscription(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or update the single subscription row keyed on user_id"""
        pass

    @abstractmethod
    async def update_subscription(self, row_id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def mark_subscription_cancelled(self, subscription_id: str, cancelled_at: datetime) -> int:
        """Set status=cancelled for the external subscription id; returns affected rows"""
        pass

    @abstractmethod
    async def expire_overdue_subscriptions(self, now: datetime) -> int:
        pass

    @abstractmethod
    async def add_credits(
        self,
        user_id: str,
        credit_delta: int,
        transaction_type: str,
        external_payment_id: Optional[str],
        description: str,
    ) -> LedgerResult:
        """Atomically adjust the balance and append the credit transaction"""
        pass

    @abstractmethod
    async def record_payment_history(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Append a payment history row; never updates existing rows"""
        pass

    @abstractmethod
    async def log_system_event(self, event_type: str, event_data: Dict[str, Any], user_id: str = None) -> bool:
        pass


class IUserDirectory(ABC):
    """Read-only projection of the identity store"""

    @abstractmethod
    async def resolve_user_id_by_email(self, email: Optional[str]) -> Optional[str]:
        """Internal user id for a customer email, or None"""
        pass
