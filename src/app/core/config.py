"""
Application settings
"""
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import validator
from pydantic_settings import BaseSettings


_FILE_PATH = Path(__file__).resolve()


def _collect_env_files(file_path: Path) -> tuple[Path, ...]:
    """Collect .env candidates, nearest directory first."""

    collected: list[Path] = []
    seen: set[Path] = set()

    for directory in file_path.parents:
        for name in (".env", ".env.local"):
            candidate = directory / name
            if candidate.exists() and candidate not in seen:
                collected.append(candidate)
                seen.add(candidate)

    return tuple(collected)


_ENV_FILES = _collect_env_files(_FILE_PATH)


def _load_dotenv_files() -> None:
    for dotenv_path in _ENV_FILES:
        load_dotenv(dotenv_path, override=False)


_load_dotenv_files()

_PLAN_NAMES = {"basic", "pro"}


class Settings(BaseSettings):
    """Settings for the payment webhook service"""

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"

    # Supabase (service role is required: admin user lookup and RPC calls)
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    # Dodo Payments webhook verification
    DODO_WEBHOOK_SECRET: Optional[str] = None
    DODO_WEBHOOK_STRICT_VERIFY: bool = True
    DODO_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Catalog tables. JSON objects when provided through the environment.
    DODO_PACKAGE_CREDITS: Dict[str, int] = {
        "pdt_0NWfLXQfz6P34vDNgGT6J": 50,
        "pdt_0NWfLZHVYcwnA37B60iio": 120,
        "pdt_0NWfLbT49dqQm9bNqVVjS": 300,
        "pdt_0NWfNy0Q3SrufzdKZlE2G": 750,
        "pdt_0NWfO0TYn9murkxJ3FWbC": 1200,
        "pdt_0NWfO2IA7c8uoxbXKPkFP": 1999,
    }
    DODO_PRODUCT_PLANS: Dict[str, str] = {
        "pdt_0NWfLOSWmnFywSwZldAHa": "basic",
        "pdt_0NWfLU5OfjnVhmPz86wWZ": "pro",
    }
    PLAN_MONTHLY_CREDITS: Dict[str, int] = {"basic": 200, "pro": 400}
    PLAN_PRICES_INR: Dict[str, int] = {"basic": 399, "pro": 699}
    # credits in package -> price in INR
    PACKAGE_PRICES_INR: Dict[int, int] = {
        50: 99,
        120: 199,
        300: 399,
        750: 999,
        1200: 1499,
        1999: 1999,
    }
    SUBSCRIPTION_PERIOD_DAYS: int = 30

    DEFAULT_PAYMENT_METHOD: str = "upi"
    # user_id stored on failed payments whose customer cannot be resolved
    UNKNOWN_USER_ID: str = "unknown"
    USER_LOOKUP_PAGE_SIZE: int = 1000

    # Background sweep that marks overdue subscriptions as expired
    EXPIRY_SWEEP_ENABLED: bool = True
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 3600

    @validator("DODO_PRODUCT_PLANS")
    def validate_product_plans(cls, v):
        unknown = sorted({plan for plan in v.values() if plan not in _PLAN_NAMES})
        if unknown:
            raise ValueError(f"DODO_PRODUCT_PLANS has unknown plan types: {unknown}")
        return v

    @validator("PLAN_MONTHLY_CREDITS", "PLAN_PRICES_INR")
    def validate_plan_tables(cls, v):
        missing = sorted(_PLAN_NAMES - set(v))
        if missing:
            raise ValueError(f"plan table is missing entries for: {missing}")
        if any(amount < 0 for amount in v.values()):
            raise ValueError("plan table values must not be negative")
        return v

    @validator("DODO_PACKAGE_CREDITS")
    def validate_package_credits(cls, v):
        if any(amount <= 0 for amount in v.values()):
            raise ValueError("DODO_PACKAGE_CREDITS values must be positive")
        return v

    @validator("SUBSCRIPTION_PERIOD_DAYS")
    def validate_period(cls, v):
        if v <= 0:
            raise ValueError("SUBSCRIPTION_PERIOD_DAYS must be positive")
        return v

    class Config:
        env_file = tuple(str(path) for path in _ENV_FILES) if _ENV_FILES else None
        case_sensitive = True
        extra = "allow"


settings = Settings()


def require_supabase_credentials() -> tuple[str, str]:
    """Return (url, service role key) or raise when the store is not configured."""
    url = (settings.SUPABASE_URL or "").strip()
    key = (settings.SUPABASE_SERVICE_ROLE_KEY or "").strip()
    if not url:
        raise ValueError("SUPABASE_URL is required")
    if not key:
        raise ValueError("SUPABASE_SERVICE_ROLE_KEY is required")
    return url, key
