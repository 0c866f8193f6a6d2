"""
In-memory store for local runs and tests.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from shared.errors import ConflictError
from shared.logging import get_logger

from ..models import (
    IdentityKind, PrimaryIdentity, SecondaryIdentity, TransactionRecord,
    TransactionStatus, UsagePeriod
)
from .base import BillingStore, WalletAdmission


class InMemoryStore(BillingStore):
    """Dictionary-backed store with the same semantics as PostgreSQLStore.

    Every mutation runs under one asyncio lock, so reserve_query is a single
    conditional increment just like the SQL upsert.
    """

    def __init__(self):
        self.logger = get_logger("billing.persistence.memory")
        self._lock = asyncio.Lock()
        self._primaries: Dict[str, PrimaryIdentity] = {}
        self._secondaries: Dict[str, SecondaryIdentity] = {}
        # (wallet_address, chain_id) -> (kind, identity id)
        self._wallet_pairs: Dict[Tuple[str, str], Tuple[IdentityKind, str]] = {}
        self._query_usage: Dict[Tuple[str, int, int], int] = {}
        self._transactions: Dict[str, TransactionRecord] = {}

    async def get_primary(self, primary_id: str) -> Optional[PrimaryIdentity]:
        primary = self._primaries.get(primary_id)
        return replace(primary) if primary else None

    async def get_primary_by_wallet(self, wallet_address: str, chain_id: str) -> Optional[PrimaryIdentity]:
        entry = self._wallet_pairs.get((wallet_address, chain_id))
        if entry and entry[0] == IdentityKind.PRIMARY:
            return await self.get_primary(entry[1])
        return None

    async def create_primary(self, primary: PrimaryIdentity) -> PrimaryIdentity:
        async with self._lock:
            key = (primary.wallet_address, primary.chain_id)
            if key in self._wallet_pairs:
                raise ConflictError(
                    "Wallet is already registered",
                    details={"wallet_address": primary.wallet_address, "chain_id": primary.chain_id}
                )
            self._primaries[primary.id] = replace(primary)
            self._wallet_pairs[key] = (IdentityKind.PRIMARY, primary.id)
        self.logger.info("Primary identity created", identity_id=primary.id)
        return replace(primary)

    async def set_plan(self, primary_id: str, plan_id: Optional[str]) -> Optional[PrimaryIdentity]:
        async with self._lock:
            primary = self._primaries.get(primary_id)
            if primary is None:
                return None
            primary.plan_id = plan_id
            return replace(primary)

    async def mark_trial_consumed(self, primary_id: str) -> Optional[PrimaryIdentity]:
        async with self._lock:
            primary = self._primaries.get(primary_id)
            if primary is None:
                return None
            primary.trial_consumed = True
            return replace(primary)

    async def get_secondary(self, secondary_id: str) -> Optional[SecondaryIdentity]:
        secondary = self._secondaries.get(secondary_id)
        return replace(secondary) if secondary else None

    async def get_secondary_by_wallet(self, wallet_address: str, chain_id: str) -> Optional[SecondaryIdentity]:
        entry = self._wallet_pairs.get((wallet_address, chain_id))
        if entry and entry[0] == IdentityKind.SECONDARY:
            return await self.get_secondary(entry[1])
        return None

    async def list_secondaries(self, primary_id: str) -> List[SecondaryIdentity]:
        secondaries = [
            replace(s) for s in self._secondaries.values()
            if s.parent_identity_id == primary_id
        ]
        secondaries.sort(key=lambda s: s.created_at)
        return secondaries

    async def create_secondary(self, secondary: SecondaryIdentity,
                               admit: Optional[WalletAdmission] = None) -> Optional[SecondaryIdentity]:
        async with self._lock:
            parent = self._primaries.get(secondary.parent_identity_id)
            if parent is None:
                raise ConflictError(
                    "Parent identity does not exist",
                    details={"parent_identity_id": secondary.parent_identity_id}
                )
            key = (secondary.wallet_address, secondary.chain_id)
            if key in self._wallet_pairs:
                raise ConflictError(
                    "Wallet is already registered",
                    details={"wallet_address": secondary.wallet_address, "chain_id": secondary.chain_id}
                )
            if admit is not None:
                siblings = [
                    replace(s) for s in self._secondaries.values()
                    if s.parent_identity_id == parent.id
                ]
                siblings.sort(key=lambda s: s.created_at)
                if not admit(replace(parent), siblings):
                    self.logger.info("Secondary identity not admitted", parent_identity_id=parent.id)
                    return None
            self._secondaries[secondary.id] = replace(secondary)
            self._wallet_pairs[key] = (IdentityKind.SECONDARY, secondary.id)
        self.logger.info("Secondary identity created",
                         identity_id=secondary.id,
                         parent_identity_id=secondary.parent_identity_id)
        return replace(secondary)

    async def delete_secondary(self, secondary_id: str) -> bool:
        async with self._lock:
            secondary = self._secondaries.pop(secondary_id, None)
            if secondary is None:
                return False
            self._wallet_pairs.pop((secondary.wallet_address, secondary.chain_id), None)
        self.logger.info("Secondary identity deleted", identity_id=secondary_id)
        return True

    async def get_query_usage(self, primary_id: str, period: UsagePeriod) -> int:
        return self._query_usage.get((primary_id, period.month, period.year), 0)

    async def reserve_query(self, primary_id: str, period: UsagePeriod,
                            limit: Optional[int]) -> Tuple[bool, int]:
        key = (primary_id, period.month, period.year)
        async with self._lock:
            used = self._query_usage.get(key, 0)
            if limit is not None and used >= limit:
                return False, used
            self._query_usage[key] = used + 1
            return True, used + 1

    async def record_transaction(self, record: TransactionRecord) -> TransactionRecord:
        async with self._lock:
            existing = self._transactions.get(record.id)
            if existing is not None:
                if not existing.accepts_update_from(record):
                    raise ConflictError(
                        "Transaction cannot be updated",
                        details={"transaction_id": record.id, "status": existing.status.value}
                    )
                existing.status = record.status
                return replace(existing)
            self._transactions[record.id] = replace(record)
            return replace(record)

    async def sum_transaction_volume(self, primary_id: str,
                                     start: datetime, end: datetime) -> Decimal:
        return sum(
            (t.amount for t in self._transactions.values()
             if t.primary_identity_id == primary_id
             and t.status == TransactionStatus.SUCCESS
             and start <= t.created_at < end),
            Decimal("0")
        )

    async def health_check(self) -> bool:
        return True
