"""
Storage contract for Billing Service.

Implementations raise ``StoreError`` when the backend cannot answer and
``ConflictError`` when a write would bind a wallet pair twice. Lookups that
find nothing return None.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from ..models import (
    PrimaryIdentity, SecondaryIdentity, TransactionRecord, UsagePeriod
)


# Decides, with the parent row locked, whether one more secondary fits the plan
WalletAdmission = Callable[[PrimaryIdentity, List[SecondaryIdentity]], bool]


class BillingStore(ABC):
    """Keyed-lookup store for identities, query counters and transactions."""

    async def start(self):
        """Open connections. Override when the backend needs it."""

    async def stop(self):
        """Close connections. Override when the backend needs it."""

    # Primary identities

    @abstractmethod
    async def get_primary(self, primary_id: str) -> Optional[PrimaryIdentity]:
        ...

    @abstractmethod
    async def get_primary_by_wallet(self, wallet_address: str, chain_id: str) -> Optional[PrimaryIdentity]:
        ...

    @abstractmethod
    async def create_primary(self, primary: PrimaryIdentity) -> PrimaryIdentity:
        """Insert a primary; ConflictError if the wallet pair is already bound."""

    @abstractmethod
    async def set_plan(self, primary_id: str, plan_id: Optional[str]) -> Optional[PrimaryIdentity]:
        """Replace the plan; None clears it (cancellation)."""

    @abstractmethod
    async def mark_trial_consumed(self, primary_id: str) -> Optional[PrimaryIdentity]:
        """Set the one-way trial latch."""

    # Secondary identities

    @abstractmethod
    async def get_secondary(self, secondary_id: str) -> Optional[SecondaryIdentity]:
        ...

    @abstractmethod
    async def get_secondary_by_wallet(self, wallet_address: str, chain_id: str) -> Optional[SecondaryIdentity]:
        ...

    @abstractmethod
    async def list_secondaries(self, primary_id: str) -> List[SecondaryIdentity]:
        """Secondaries of one primary, oldest first."""

    @abstractmethod
    async def create_secondary(self, secondary: SecondaryIdentity,
                               admit: Optional[WalletAdmission] = None) -> Optional[SecondaryIdentity]:
        """Insert a secondary; ConflictError if the pair is bound or the parent is missing.

        ``admit`` runs while the parent identity is locked against other
        writers, with the parent and its current secondaries. When it returns
        False nothing is written and the result is None.
        """

    @abstractmethod
    async def delete_secondary(self, secondary_id: str) -> bool:
        ...

    # Usage

    @abstractmethod
    async def get_query_usage(self, primary_id: str, period: UsagePeriod) -> int:
        """Used count for the period; 0 when no counter row exists."""

    @abstractmethod
    async def reserve_query(self, primary_id: str, period: UsagePeriod,
                            limit: Optional[int]) -> Tuple[bool, int]:
        """Atomically increment the counter unless it already reached ``limit``.

        Returns ``(charged, used_count_after)``. ``limit=None`` means no bound.
        """

    @abstractmethod
    async def record_transaction(self, record: TransactionRecord) -> TransactionRecord:
        """Insert a transaction, or update the status of an existing id."""

    @abstractmethod
    async def sum_transaction_volume(self, primary_id: str,
                                     start: datetime, end: datetime) -> Decimal:
        """Sum of successful amounts with ``start <= created_at < end``."""

    @abstractmethod
    async def health_check(self) -> bool:
        ...
