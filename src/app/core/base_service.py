"""
Base class for services
"""
import logging
from typing import Dict, Any
from core.interfaces import ILedgerStore

logger = logging.getLogger(__name__)


class BaseService:
    """Common base for services backed by the ledger store"""

    def __init__(self, db_helper: ILedgerStore):
        self.db_helper = db_helper
        self.logger = logging.getLogger(self.__class__.__name__)

    async def log_system_action(self, action: str, data: Dict[str, Any] = None, user_id: str = None) -> bool:
        """Write an audit row; failures are logged and never interrupt the caller"""
        try:
            return await self.db_helper.log_system_event(
                event_type=action,
                event_data=data or {},
                user_id=user_id,
            )
        except Exception as e:
            self.logger.warning(f"system log write failed ({action}): {e}")
            return False
