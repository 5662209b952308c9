"""
Plan and credit package catalog
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class PlanType(str, Enum):
    """Subscription tiers. FREE marks balance rows of credit-only buyers."""
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


@dataclass(frozen=True)
class PlanTerms:
    plan_type: PlanType
    monthly_credits: int
    price_inr: int

    @property
    def label(self) -> str:
        return self.plan_type.value.capitalize()


class BillingCatalog:
    """Immutable lookup tables keyed by Dodo product ids.

    Built once from settings so deployments can rotate product ids without a
    code change. Unknown plan products fall back to BASIC.
    """

    DEFAULT_PLAN = PlanType.BASIC

    def __init__(
        self,
        product_plans: Mapping[str, str],
        plan_credits: Mapping[str, int],
        plan_prices: Mapping[str, int],
        package_credits: Mapping[str, int],
        package_prices: Mapping[int, int],
        period_days: int = 30,
    ):
        self._product_plans = MappingProxyType(
            {product_id: PlanType(plan) for product_id, plan in product_plans.items()}
        )
        self._plans = MappingProxyType(
            {
                PlanType(plan): PlanTerms(
                    plan_type=PlanType(plan),
                    monthly_credits=int(credits),
                    price_inr=int(plan_prices.get(plan, 0)),
                )
                for plan, credits in plan_credits.items()
            }
        )
        self._package_credits = MappingProxyType(dict(package_credits))
        self._package_prices = MappingProxyType({int(k): int(v) for k, v in package_prices.items()})
        self.period_days = int(period_days)

    @classmethod
    def from_settings(cls, settings) -> "BillingCatalog":
        return cls(
            product_plans=settings.DODO_PRODUCT_PLANS,
            plan_credits=settings.PLAN_MONTHLY_CREDITS,
            plan_prices=settings.PLAN_PRICES_INR,
            package_credits=settings.DODO_PACKAGE_CREDITS,
            package_prices=settings.PACKAGE_PRICES_INR,
            period_days=settings.SUBSCRIPTION_PERIOD_DAYS,
        )

    def is_plan_product(self, product_id: Optional[str]) -> bool:
        return bool(product_id) and product_id in self._product_plans

    def plan_for_product(self, product_id: Optional[str]) -> PlanTerms:
        plan_type = self._product_plans.get(product_id or "", self.DEFAULT_PLAN)
        return self.plan_terms(plan_type)

    def plan_terms(self, plan_type: Any) -> PlanTerms:
        """Terms for a stored plan value; unknown or FREE values get BASIC terms."""
        try:
            resolved = PlanType(plan_type)
        except ValueError:
            resolved = self.DEFAULT_PLAN
        terms = self._plans.get(resolved)
        if terms is None:
            terms = self._plans[self.DEFAULT_PLAN]
        return terms

    def package_credits(self, product_id: Optional[str]) -> Optional[int]:
        if not product_id:
            return None
        return self._package_credits.get(product_id)

    def package_price(self, credits: int) -> Optional[int]:
        return self._package_prices.get(int(credits))

    def describe(self) -> Dict[str, Any]:
        return {
            "plans": {
                terms.plan_type.value: {
                    "monthly_credits": terms.monthly_credits,
                    "price_inr": terms.price_inr,
                }
                for terms in self._plans.values()
            },
            "packages": {
                product_id: {
                    "credits": credits,
                    "price_inr": self._package_prices.get(credits),
                }
                for product_id, credits in self._package_credits.items()
            },
            "period_days": self.period_days,
        }
