"""
Usage accounting for Billing Service.
"""

import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional, Union

from shared.errors import StoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import (
    LookupFailed, NotFound, PlanCapabilities, PrimaryIdentity, QueryCharge,
    ResolvedIdentity, TransactionRecord, TransactionStatus, UsagePeriod,
    UsageSnapshot, utc_now
)
from ..persistence.base import BillingStore
from ..plans.catalog import PlanCatalog


UsageResult = Union[UsageSnapshot, NotFound, LookupFailed]


def percent_used(used, limit) -> int:
    """Whole percent of ``limit`` consumed, half rounded up, capped at 100.

    An unlimited (None) or zero limit reports 0.
    """
    if not limit:
        return 0
    ratio = Decimal(used) * 100 / Decimal(limit)
    return min(100, int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


class UsageAccountant:
    """Reads and charges usage for a whole identity graph.

    All counters are keyed by the primary identity, so a secondary always
    sees its parent's usage.
    """

    def __init__(self, store: BillingStore, catalog: PlanCatalog,
                 now: Callable[[], datetime] = utc_now,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.catalog = catalog
        self.metrics = metrics
        self._now = now
        self.logger = get_logger("billing.usage_accountant")

    def current_period(self) -> UsagePeriod:
        return UsagePeriod.containing(self._now())

    async def get_usage(self, identity_id: str) -> UsageResult:
        """Usage for a primary, or for the parent of a secondary."""
        try:
            primary = await self._primary_for(identity_id)
            if primary is None:
                return NotFound(identity_id=identity_id, hint="Unknown identity")
            return await self._snapshot(primary.id, self.catalog.get_plan(primary.plan_id))
        except StoreError as e:
            self.logger.warning("Usage lookup failed", identity_id=identity_id, error=e.message)
            return LookupFailed(reason=e.message)

    async def usage_for(self, identity: ResolvedIdentity) -> Union[UsageSnapshot, LookupFailed]:
        """Usage for an already resolved identity."""
        try:
            return await self._snapshot(identity.primary_identity_id, identity.plan)
        except StoreError as e:
            self.logger.warning("Usage lookup failed",
                                identity_id=identity.primary_identity_id,
                                error=e.message)
            return LookupFailed(reason=e.message)

    async def charge_query(self, primary_identity_id: str,
                           limit: Optional[int]) -> Union[QueryCharge, LookupFailed]:
        """Charge one query against this month's counter.

        The store reserves atomically; with ``limit`` set the counter never
        passes it, however many callers race.
        """
        period = self.current_period()
        try:
            charged, used = await self.store.reserve_query(primary_identity_id, period, limit)
        except StoreError as e:
            self.logger.warning("Query charge failed", identity_id=primary_identity_id, error=e.message)
            return LookupFailed(reason=e.message)

        if self.metrics:
            self.metrics.increment_counter("query_charges_total", result="charged" if charged else "rejected")

        self.logger.info("Query charge",
                         identity_id=primary_identity_id,
                         charged=charged,
                         used=used,
                         limit=limit,
                         month=period.month,
                         year=period.year)
        return QueryCharge(charged=charged, used=used, limit=limit)

    async def record_transaction(self, primary_identity_id: str, amount: Decimal,
                                 status: TransactionStatus,
                                 transaction_id: Optional[str] = None,
                                 reference: Optional[str] = None) -> Union[TransactionRecord, LookupFailed]:
        """Record a transaction outcome reported by a caller.

        Reporting the same id again updates its status, so PENDING can later
        become SUCCESS or FAILED. SUCCESS and FAILED are final, and only the
        identity that first reported an id may report it again; anything else
        raises ConflictError. Only SUCCESS counts toward volume.
        """
        record = TransactionRecord(
            id=transaction_id or str(uuid.uuid4()),
            primary_identity_id=primary_identity_id,
            amount=amount,
            status=status,
            created_at=self._now(),
            reference=reference,
        )
        try:
            stored = await self.store.record_transaction(record)
        except StoreError as e:
            self.logger.warning("Transaction record failed", identity_id=primary_identity_id, error=e.message)
            return LookupFailed(reason=e.message)

        self.logger.info("Transaction recorded",
                         identity_id=primary_identity_id,
                         transaction_id=stored.id,
                         status=stored.status.value,
                         amount=str(stored.amount))
        return stored

    async def _primary_for(self, identity_id: str) -> Optional[PrimaryIdentity]:
        primary = await self.store.get_primary(identity_id)
        if primary is not None:
            return primary
        secondary = await self.store.get_secondary(identity_id)
        if secondary is None:
            return None
        return await self.store.get_primary(secondary.parent_identity_id)

    async def _snapshot(self, primary_identity_id: str, plan: PlanCapabilities) -> UsageSnapshot:
        period = self.current_period()
        queries_used = await self.store.get_query_usage(primary_identity_id, period)
        volume_used = await self.store.sum_transaction_volume(primary_identity_id, period.start, period.end)

        return UsageSnapshot(
            primary_identity_id=primary_identity_id,
            plan_name=plan.name,
            period=period,
            queries_used=queries_used,
            queries_limit=plan.query_quota,
            transaction_volume_used=volume_used,
            transaction_volume_limit=plan.transaction_volume_quota,
            percent_used=percent_used(queries_used, plan.query_quota),
            transaction_percent_used=percent_used(volume_used, plan.transaction_volume_quota),
        )
