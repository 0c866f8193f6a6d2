"""
Static plan catalog for Billing Service.
"""

from dataclasses import replace
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List, Optional

from shared.logging import get_logger

from ..models import PlanCapabilities


DEFAULT_PLAN_NAME = "Free"

_BASE_PLANS: List[PlanCapabilities] = [
    PlanCapabilities(
        name="Free",
        display_name="Free Trial",
        max_wallets=1,
        query_quota=100,
        transaction_volume_quota=Decimal("5000"),
        can_view_other_wallets=False,
        can_add_wallets=False,
        price=Decimal("0"),
        billing_period="trial",
    ),
    PlanCapabilities(
        name="Basic",
        display_name="Basic",
        max_wallets=1,
        query_quota=1000,
        transaction_volume_quota=Decimal("10000"),
        can_view_other_wallets=False,
        can_add_wallets=False,
        price=Decimal("19"),
        processor_plan_id="P-7WV44462TF966624XNB2PKXA",
    ),
    PlanCapabilities(
        name="Pro",
        display_name="Pro",
        max_wallets=3,
        query_quota=15000,
        transaction_volume_quota=Decimal("20000"),
        can_view_other_wallets=True,
        can_add_wallets=True,
        price=Decimal("29"),
        processor_plan_id="P-1LC09938TF381221LNB2PLHQ",
    ),
    PlanCapabilities(
        name="Premium",
        display_name="Premium",
        max_wallets=5,
        query_quota=1000000,
        transaction_volume_quota=None,
        can_view_other_wallets=True,
        can_add_wallets=True,
        price=Decimal("49"),
        processor_plan_id="P-7S343131C3165360FNB2PJ6A",
    ),
]


class PlanCatalog:
    """Immutable lookup over the product tiers.

    ``counts_separately_chains`` is applied to every plan; wallets on those
    chains always consume their own wallet slot.
    """

    def __init__(self, counts_separately_chains: Iterable[str] = ()):
        self.logger = get_logger("billing.plan_catalog")
        chains: FrozenSet[str] = frozenset(chain.lower() for chain in counts_separately_chains)
        self._plans: Dict[str, PlanCapabilities] = {}
        self._by_processor_id: Dict[str, PlanCapabilities] = {}

        for base in _BASE_PLANS:
            plan = replace(base, counts_separately_chains=chains)
            self._plans[plan.name] = plan
            if plan.processor_plan_id:
                self._by_processor_id[plan.processor_plan_id] = plan

    @staticmethod
    def normalize_name(name: Optional[str]) -> Optional[str]:
        """'pro', 'PRO ' and 'Pro' all map to 'Pro'."""
        if not name or not name.strip():
            return None
        return name.strip().capitalize()

    def get_plan(self, name: Optional[str]) -> PlanCapabilities:
        """Get a plan by name; unknown or absent names give the Free tier."""
        normalized = self.normalize_name(name)
        plan = self._plans.get(normalized) if normalized else None
        if plan is None:
            if normalized:
                self.logger.warning("Unknown plan name, using default", plan_name=name)
            return self._plans[DEFAULT_PLAN_NAME]
        return plan

    def find_plan(self, name: Optional[str]) -> Optional[PlanCapabilities]:
        """Strict lookup for write paths; None when the name is unknown."""
        normalized = self.normalize_name(name)
        return self._plans.get(normalized) if normalized else None

    def get_plan_by_processor_id(self, processor_plan_id: str) -> Optional[PlanCapabilities]:
        """Map a payment-processor plan id back to a tier."""
        return self._by_processor_id.get(processor_plan_id)

    def is_paid_plan(self, name: Optional[str]) -> bool:
        return self.get_plan(name).is_paid

    def list_plans(self) -> List[PlanCapabilities]:
        """All plans ordered by price."""
        return sorted(self._plans.values(), key=lambda p: p.price)
