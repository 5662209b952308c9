"""
Subscription state management

State machine per user: none -> active -> {cancelled, expired}. Renewal pushes
expires_at forward and revives rows the expiry sweep marked expired; cancelled
rows stay cancelled until a new activation re-provisions them through the
same upsert.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from core.base_service import BaseService
from core.billing_catalog import BillingCatalog, PlanTerms
from core.interfaces import ILedgerStore


class SubscriptionStatus:
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionService(BaseService):
    """Writes the one-per-user subscription row. Never touches the credit balance."""

    def __init__(self, db_helper: ILedgerStore, catalog: BillingCatalog):
        super().__init__(db_helper)
        self.catalog = catalog

    def _expiry_from(self, now: datetime) -> datetime:
        return now + timedelta(days=self.catalog.period_days)

    async def get_by_external_id(self, subscription_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return await self.db_helper.get_subscription_by_external_id(subscription_id)

    async def provision(
        self,
        user_id: str,
        terms: PlanTerms,
        subscription_id: Optional[str],
        customer_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Upsert the user's row as an active subscription on the given plan.

        current_credits is not part of the record: new rows start
        at the column default and existing balances are carried over; the plan
        allotment is added afterwards through the ledger.
        """
        now = now or datetime.now(timezone.utc)
        record = {
            "user_id": user_id,
            "plan_type": terms.plan_type.value,
            "status": SubscriptionStatus.ACTIVE,
            "price_inr": terms.price_inr,
            "monthly_credits": terms.monthly_credits,
            "dodo_subscription_id": subscription_id,
            "dodo_customer_id": customer_id,
            "started_at": now,
            "expires_at": self._expiry_from(now),
            "cancelled_at": None,
            "updated_at": now,
        }
        row = await self.db_helper.upsert_subscription(record)
        self.logger.info(
            "subscription provisioned: user_id=%s plan=%s subscription_id=%s",
            user_id,
            terms.plan_type.value,
            subscription_id,
        )
        return row

    async def renew(self, subscription: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Extend expiry to now + period.

        A row the expiry sweep marked expired becomes active again; a cancelled
        row keeps its status until a new activation re-provisions it.
        """
        now = now or datetime.now(timezone.utc)
        expires_at = self._expiry_from(now)
        fields: Dict[str, Any] = {
            "expires_at": expires_at,
            "updated_at": now,
        }
        if subscription.get("status") == SubscriptionStatus.EXPIRED:
            fields["status"] = SubscriptionStatus.ACTIVE
        row = await self.db_helper.update_subscription(subscription["id"], fields)
        self.logger.info(
            "subscription renewed: subscription_id=%s status=%s expires_at=%s",
            subscription.get("dodo_subscription_id"),
            fields.get("status", subscription.get("status")),
            expires_at.isoformat(),
        )
        return row or {**subscription, **fields}

    async def end(self, subscription_id: Optional[str], now: Optional[datetime] = None) -> int:
        """Mark cancelled; credits already granted stay on the balance"""
        if not subscription_id:
            self.logger.warning("subscription end event without subscription_id")
            return 0
        now = now or datetime.now(timezone.utc)
        updated = await self.db_helper.mark_subscription_cancelled(subscription_id, now)
        if updated:
            self.logger.info("subscription cancelled: %s", subscription_id)
        else:
            self.logger.warning("subscription to cancel not found or already cancelled: %s", subscription_id)
        return updated

    async def expire_overdue(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        expired = await self.db_helper.expire_overdue_subscriptions(now)
        if expired:
            await self.log_system_action(
                "subscription_expiry_sweep",
                {"expired": expired, "timestamp": now.isoformat()},
            )
        return expired
