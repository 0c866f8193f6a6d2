"""
Identity resolution for Billing Service.
"""

from typing import Optional

from shared.errors import StoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import (
    IdentityKind, IdentityResolution, Invalid, LookupFailed, NotFound,
    PrimaryIdentity, ResolvedIdentity, SecondaryIdentity
)
from ..persistence.base import BillingStore
from ..plans.catalog import PlanCatalog
from ..validation import validate_wallet_pair


class IdentityResolver:
    """Resolves wallet pairs and identity ids to a ResolvedIdentity.

    Read-only. The plan always comes from the primary row read during this
    call, so a plan change on the primary is visible through every secondary
    immediately.
    """

    def __init__(self, store: BillingStore, catalog: PlanCatalog,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.catalog = catalog
        self.metrics = metrics
        self.logger = get_logger("billing.identity_resolver")

    async def resolve(self, wallet_address: Optional[str], chain_id: Optional[str]) -> IdentityResolution:
        """Resolve a (wallet address, chain id) pair."""
        pair = validate_wallet_pair(wallet_address, chain_id)
        if isinstance(pair, Invalid):
            return self._record(pair)
        address, chain = pair

        try:
            primary = await self.store.get_primary_by_wallet(address, chain)
            if primary is not None:
                return self._record(self._resolved_primary(primary))

            secondary = await self.store.get_secondary_by_wallet(address, chain)
            if secondary is not None:
                return self._record(await self._resolve_secondary(secondary))

        except StoreError as e:
            self.logger.warning("Identity lookup failed",
                                wallet_address=address,
                                chain_id=chain,
                                error=e.message)
            return self._record(LookupFailed(reason=e.message))

        return self._record(NotFound(wallet_address=address, chain_id=chain))

    async def resolve_by_id(self, identity_id: str) -> IdentityResolution:
        """Resolve a primary or secondary identity by its id."""
        try:
            primary = await self.store.get_primary(identity_id)
            if primary is not None:
                return self._record(self._resolved_primary(primary))

            secondary = await self.store.get_secondary(identity_id)
            if secondary is not None:
                return self._record(await self._resolve_secondary(secondary))

        except StoreError as e:
            self.logger.warning("Identity lookup failed", identity_id=identity_id, error=e.message)
            return self._record(LookupFailed(reason=e.message))

        return self._record(NotFound(identity_id=identity_id, hint="Unknown identity"))

    async def _resolve_secondary(self, secondary: SecondaryIdentity) -> IdentityResolution:
        parent = await self.store.get_primary(secondary.parent_identity_id)
        if parent is None:
            self.logger.error("Secondary identity has no parent",
                              identity_id=secondary.id,
                              parent_identity_id=secondary.parent_identity_id)
            return LookupFailed(reason="Parent identity missing", retryable=False)

        return ResolvedIdentity(
            kind=IdentityKind.SECONDARY,
            identity_id=secondary.id,
            primary_identity_id=parent.id,
            wallet_address=secondary.wallet_address,
            chain_id=secondary.chain_id,
            plan=self.catalog.get_plan(parent.plan_id),
            trial_started_at=parent.trial_started_at,
            trial_consumed=parent.trial_consumed,
            parent_identity_id=parent.id,
        )

    def _resolved_primary(self, primary: PrimaryIdentity) -> ResolvedIdentity:
        return ResolvedIdentity(
            kind=IdentityKind.PRIMARY,
            identity_id=primary.id,
            primary_identity_id=primary.id,
            wallet_address=primary.wallet_address,
            chain_id=primary.chain_id,
            plan=self.catalog.get_plan(primary.plan_id),
            trial_started_at=primary.trial_started_at,
            trial_consumed=primary.trial_consumed,
        )

    def _record(self, resolution: IdentityResolution) -> IdentityResolution:
        if self.metrics:
            self.metrics.increment_counter("identity_resolutions_total", outcome=outcome_label(resolution))
        return resolution


def outcome_label(resolution: IdentityResolution) -> str:
    """Metric/log label for a resolution outcome."""
    if isinstance(resolution, ResolvedIdentity):
        return "stale" if resolution.stale else resolution.kind.value
    if isinstance(resolution, NotFound):
        return "not_found"
    if isinstance(resolution, LookupFailed):
        return "lookup_failed"
    return "invalid"
