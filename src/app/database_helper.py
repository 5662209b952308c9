"""
Supabase access for subscriptions, the credit ledger and payment history
"""

from typing import Dict, Optional, Any
from datetime import datetime
from postgrest.exceptions import APIError
from supabase import Client
import logging

from core.interfaces import ILedgerStore, LedgerResult
from core.responses import DuplicatePaymentError, LedgerPersistenceError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class DatabaseHelper(ILedgerStore):
    def __init__(self, admin_client: Client):
        # service role client: bypasses RLS for webhook writes
        self.admin_client = admin_client

    def _table(self, name: str):
        return self.admin_client.table(name)

    @staticmethod
    def _serialize(record: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in record.items()
        }

    # Idempotency checks
    async def _has_payment_with_status(self, payment_id: str, status: str) -> bool:
        if not payment_id:
            return False
        try:
            result = (
                self._table('payment_history')
                .select('id')
                .eq('dodo_payment_id', payment_id)
                .eq('status', status)
                .limit(1)
                .execute()
            )
            return bool(result.data)
        except Exception as e:
            logger.error(f"payment history lookup failed for {payment_id}: {e}")
            raise LedgerPersistenceError("payment history lookup") from e

    async def has_completed_payment(self, payment_id: str) -> bool:
        return await self._has_payment_with_status(payment_id, 'completed')

    async def has_failed_payment(self, payment_id: str) -> bool:
        return await self._has_payment_with_status(payment_id, 'failed')

    async def has_credit_transaction(self, payment_id: str, transaction_type: str) -> bool:
        if not payment_id:
            return False
        try:
            result = (
                self._table('credit_transactions')
                .select('id')
                .eq('dodo_payment_id', payment_id)
                .eq('transaction_type', transaction_type)
                .limit(1)
                .execute()
            )
            return bool(result.data)
        except Exception as e:
            logger.error(f"credit transaction lookup failed for {payment_id}: {e}")
            raise LedgerPersistenceError("credit transaction lookup") from e

    # Subscriptions
    async def get_subscription_by_external_id(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        if not subscription_id:
            return None
        try:
            result = (
                self._table('user_subscriptions')
                .select('*')
                .eq('dodo_subscription_id', subscription_id)
                .limit(1)
                .execute()
            )
            return result.data[0] if result.data else None
        except Exception as e:
            logger.error(f"subscription lookup failed for {subscription_id}: {e}")
            raise LedgerPersistenceError("subscription lookup") from e

    async def upsert_subscription(self, record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = (
                self._table('user_subscriptions')
                .upsert(self._serialize(record), on_conflict='user_id')
                .execute()
            )
            return result.data[0] if result.data else dict(record)
        except Exception as e:
            logger.error(f"subscription upsert failed for user {record.get('user_id')}: {e}")
            raise LedgerPersistenceError("subscription upsert") from e

    async def update_subscription(self, row_id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self._table('user_subscriptions').update(self._serialize(fields)).eq('id', row_id).execute()
            return result.data[0] if result.data else {}
        except Exception as e:
            logger.error(f"subscription update failed for row {row_id}: {e}")
            raise LedgerPersistenceError("subscription update") from e

    async def mark_subscription_cancelled(self, subscription_id: str, cancelled_at: datetime) -> int:
        try:
            result = (
                self._table('user_subscriptions')
                .update({
                    'status': 'cancelled',
                    'cancelled_at': cancelled_at.isoformat(),
                    'updated_at': cancelled_at.isoformat(),
                })
                .eq('dodo_subscription_id', subscription_id)
                .neq('status', 'cancelled')
                .execute()
            )
            return len(result.data or [])
        except Exception as e:
            logger.error(f"subscription cancellation failed for {subscription_id}: {e}")
            raise LedgerPersistenceError("subscription cancellation") from e

    async def expire_overdue_subscriptions(self, now: datetime) -> int:
        try:
            result = (
                self._table('user_subscriptions')
                .update({'status': 'expired', 'updated_at': now.isoformat()})
                .eq('status', 'active')
                .in_('plan_type', ['basic', 'pro'])
                .lt('expires_at', now.isoformat())
                .execute()
            )
            return len(result.data or [])
        except Exception as e:
            logger.error(f"expiry sweep failed: {e}")
            raise LedgerPersistenceError("expiry sweep") from e

    # Ledger
    async def add_credits(
        self,
        user_id: str,
        credit_delta: int,
        transaction_type: str,
        external_payment_id: Optional[str],
        description: str,
    ) -> LedgerResult:
        """Single RPC: balance update and transaction append commit together"""
        try:
            rpc_res = self.admin_client.rpc('add_credits', {
                'p_user_id': user_id,
                'p_credits': int(credit_delta),
                'p_transaction_type': transaction_type,
                'p_payment_id': external_payment_id,
                'p_description': description,
            }).execute()
        except Exception as e:
            logger.error(f"add_credits failed for user {user_id} ({transaction_type}, {external_payment_id}): {e}")
            raise LedgerPersistenceError("add_credits") from e

        row = rpc_res.data
        if isinstance(row, list):
            row = row[0] if row else None
        if isinstance(row, dict):
            return LedgerResult(
                new_balance=int(row.get('new_balance') or 0),
                applied=bool(row.get('applied', True)),
            )
        if row is None:
            raise LedgerPersistenceError("add_credits", "add_credits returned no balance")
        return LedgerResult(new_balance=int(row))

    # Payment history
    async def record_payment_history(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self._table('payment_history').insert(self._serialize(entry)).execute()
            return result.data[0] if result.data else dict(entry)
        except APIError as e:
            if getattr(e, 'code', None) == UNIQUE_VIOLATION:
                raise DuplicatePaymentError(entry.get('dodo_payment_id')) from e
            logger.error(f"payment history insert failed for {entry.get('dodo_payment_id')}: {e}")
            raise LedgerPersistenceError("payment history insert") from e
        except Exception as e:
            logger.error(f"payment history insert failed for {entry.get('dodo_payment_id')}: {e}")
            raise LedgerPersistenceError("payment history insert") from e

    # System logs
    async def log_system_event(self, event_type: str = 'info', event_data: Dict = None, user_id: str = None) -> bool:
        try:
            result = self._table('system_logs').insert({
                'user_id': user_id,
                'event_type': event_type,
                'event_data': event_data or {},
            }).execute()
            return len(result.data or []) > 0
        except Exception as e:
            logger.error(f"system log write failed: {e}")
            return False
