from typing import Optional
from uuid import UUID
from supabase import Client
import logging

from core.interfaces import IUserDirectory

logger = logging.getLogger(__name__)


def _is_uuid(value: object) -> bool:
    try:
        UUID(str(value))
        return True
    except (TypeError, ValueError):
        return False


class UserDirectoryService(IUserDirectory):
    """Maps a payment customer email onto a Supabase auth user id"""

    def __init__(self, admin_client: Client, page_size: int = 1000):
        self.admin_client = admin_client
        self.page_size = max(1, int(page_size))
        self.logger = logging.getLogger(self.__class__.__name__)

    async def resolve_user_id_by_email(self, email: Optional[str]) -> Optional[str]:
        """Case-insensitive email lookup; None when missing, unmatched or not a UUID"""
        normalized = (email or "").strip().lower()
        if not normalized:
            return None

        self.logger.info("[DODO] looking up user by email: %s", normalized)
        try:
            page = 1
            while True:
                users = self.admin_client.auth.admin.list_users(page=page, per_page=self.page_size) or []
                for user in users:
                    user_email = (getattr(user, "email", None) or "").strip().lower()
                    if user_email != normalized:
                        continue
                    user_id = getattr(user, "id", None)
                    if not _is_uuid(user_id):
                        self.logger.error("[DODO] user id for %s is not a valid UUID: %s", normalized, user_id)
                        return None
                    self.logger.info("[DODO] found user id %s for %s", user_id, normalized)
                    return str(user_id)
                if len(users) < self.page_size:
                    break
                page += 1
        except Exception as e:
            self.logger.error("[DODO] user lookup failed for %s: %s", normalized, e)
            return None

        self.logger.warning("[DODO] no user found for email: %s", normalized)
        return None
