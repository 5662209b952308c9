"""
Service factory: wires the Supabase client into the webhook services
"""
from dataclasses import dataclass
from typing import Optional
import logging

from supabase import create_client

from core.billing_catalog import BillingCatalog
from core.config import settings, require_supabase_credentials
from core.interfaces import ILedgerStore, IUserDirectory
from database_helper import DatabaseHelper
from services.identity_service import UserDirectoryService
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


@dataclass
class WebhookServices:
    db_helper: ILedgerStore
    subscription_service: SubscriptionService
    user_directory: IUserDirectory
    catalog: BillingCatalog


class ServiceFactory:
    """Builds the webhook services once per process"""

    _services: Optional[WebhookServices] = None

    @staticmethod
    def configure_dependencies() -> WebhookServices:
        url, service_role_key = require_supabase_credentials()
        admin_client = create_client(url, service_role_key)

        catalog = BillingCatalog.from_settings(settings)
        db_helper = DatabaseHelper(admin_client)
        services = WebhookServices(
            db_helper=db_helper,
            subscription_service=SubscriptionService(db_helper, catalog),
            user_directory=UserDirectoryService(admin_client, page_size=settings.USER_LOOKUP_PAGE_SIZE),
            catalog=catalog,
        )
        ServiceFactory._services = services
        logger.info("webhook services configured (plans=%s)", sorted(catalog.describe()["plans"]))
        return services

    @staticmethod
    def get_services() -> WebhookServices:
        if ServiceFactory._services is None:
            return ServiceFactory.configure_dependencies()
        return ServiceFactory._services

    @staticmethod
    def reset() -> None:
        """Drop cached services (tests)"""
        ServiceFactory._services = None
