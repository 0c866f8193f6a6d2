"""
Domain models for the Billing Service.

Identity rows mirror the store; resolution, usage and decision types are the
typed outcomes the engine hands back to callers. None of the outcome types
are raised: callers branch on them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class IdentityKind(str, Enum):
    """Which identity table a wallet pair resolved from."""
    PRIMARY = "primary"
    SECONDARY = "secondary"


class ActionType(str, Enum):
    """Externally triggered actions that pass through the gate."""
    ADD_WALLET = "add_wallet"
    CREATE_INVOICE = "create_invoice"
    SUBMIT_TRANSACTION = "submit_transaction"
    READ_DASHBOARD = "read_dashboard"
    METERED_QUERY = "metered_query"


METERED_ACTIONS: FrozenSet[ActionType] = frozenset({
    ActionType.CREATE_INVOICE,
    ActionType.SUBMIT_TRANSACTION,
    ActionType.METERED_QUERY,
})

VOLUME_ACTIONS: FrozenSet[ActionType] = frozenset({
    ActionType.CREATE_INVOICE,
    ActionType.SUBMIT_TRANSACTION,
})


class DenyCode(str, Enum):
    """Stable deny codes; callers map these to user-facing messaging."""
    WALLET_LIMIT_EXCEEDED = "WALLET_LIMIT_EXCEEDED"
    TXN_LIMIT_EXCEEDED = "TXN_LIMIT_EXCEEDED"
    QUERY_LIMIT_EXCEEDED = "QUERY_LIMIT_EXCEEDED"
    WALLET_NOT_REGISTERED = "WALLET_NOT_REGISTERED"


class WalletRejection(str, Enum):
    """Why a candidate wallet cannot join an identity graph."""
    OWN_PRIMARY_WALLET = "own_primary_wallet"
    REGISTERED_TO_ANOTHER_ACCOUNT = "registered_to_another_account"
    ALREADY_ADDED = "already_added"
    OVER_LIMIT = "over_limit"


class TransactionStatus(str, Enum):
    """Outcome of an on-chain transaction as reported by the caller."""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PlanCapabilities:
    """Immutable capability row for one plan."""
    name: str
    display_name: str
    max_wallets: int
    query_quota: int
    transaction_volume_quota: Optional[Decimal]
    can_view_other_wallets: bool
    can_add_wallets: bool
    price: Decimal
    billing_period: str = "monthly"
    processor_plan_id: Optional[str] = None
    counts_separately_chains: FrozenSet[str] = frozenset()

    @property
    def is_paid(self) -> bool:
        return self.price > 0

    @property
    def has_unlimited_volume(self) -> bool:
        return self.transaction_volume_quota is None


@dataclass
class PrimaryIdentity:
    """A wallet that registered directly and owns a plan."""
    id: str
    wallet_address: str
    chain_id: str
    plan_id: Optional[str] = None
    trial_started_at: Optional[datetime] = None
    trial_consumed: bool = False
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SecondaryIdentity:
    """A wallet bound to exactly one primary identity."""
    id: str
    wallet_address: str
    chain_id: str
    parent_identity_id: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class TransactionRecord:
    """A transaction outcome charged to a primary identity."""
    id: str
    primary_identity_id: str
    amount: Decimal
    status: TransactionStatus
    created_at: datetime = field(default_factory=utc_now)
    reference: Optional[str] = None

    def accepts_update_from(self, update: "TransactionRecord") -> bool:
        """Only the owner may report again, and only a PENDING status may change."""
        if update.primary_identity_id != self.primary_identity_id:
            return False
        return self.status == TransactionStatus.PENDING or update.status == self.status


@dataclass(frozen=True)
class UsagePeriod:
    """Calendar month in UTC; the key that resets query usage."""
    month: int
    year: int

    @classmethod
    def containing(cls, moment: datetime) -> "UsagePeriod":
        moment = moment.astimezone(timezone.utc) if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
        return cls(month=moment.month, year=moment.year)

    @property
    def start(self) -> datetime:
        return datetime(self.year, self.month, 1, tzinfo=timezone.utc)

    @property
    def end(self) -> datetime:
        """First instant of the next month (exclusive bound)."""
        if self.month == 12:
            return datetime(self.year + 1, 1, 1, tzinfo=timezone.utc)
        return datetime(self.year, self.month + 1, 1, tzinfo=timezone.utc)


# Resolution outcomes

@dataclass(frozen=True)
class ResolvedIdentity:
    """Common shape for primary and secondary identities.

    ``plan`` is always the primary's current plan, read at resolution time.
    """
    kind: IdentityKind
    identity_id: str
    primary_identity_id: str
    wallet_address: str
    chain_id: str
    plan: PlanCapabilities
    trial_started_at: Optional[datetime] = None
    trial_consumed: bool = False
    parent_identity_id: Optional[str] = None
    resolved_at: datetime = field(default_factory=utc_now, compare=False)
    stale: bool = False

    @property
    def plan_name(self) -> str:
        return self.plan.name


@dataclass(frozen=True)
class NotFound:
    """Wallet pair (or identity id) is not registered anywhere."""
    wallet_address: Optional[str] = None
    chain_id: Optional[str] = None
    identity_id: Optional[str] = None
    hint: str = "Register this wallet first"


@dataclass(frozen=True)
class LookupFailed:
    """The store could not answer; retrying may succeed."""
    reason: str
    retryable: bool = True


@dataclass(frozen=True)
class Invalid:
    """Malformed input, rejected before any lookup."""
    field: str
    reason: str

    @property
    def code(self) -> str:
        return f"INVALID_{self.field.upper()}"


IdentityResolution = Union[ResolvedIdentity, NotFound, LookupFailed, Invalid]


# Component results

@dataclass(frozen=True)
class TrialStatus:
    active: bool
    days_remaining: int


@dataclass(frozen=True)
class WalletEntry:
    """One wallet in a primary's identity graph."""
    identity_id: str
    wallet_address: str
    chain_id: str
    kind: IdentityKind
    counts_toward_limit: bool


@dataclass(frozen=True)
class WalletListing:
    """Every wallet in an identity graph plus the de-duplicated count."""
    primary_identity_id: str
    wallets: List[WalletEntry]
    wallet_count: int
    max_wallets: int


@dataclass(frozen=True)
class WalletAddCheck:
    can_add: bool
    would_count_toward_limit: bool
    reason: Optional[str] = None
    rejection: Optional[WalletRejection] = None
    current_count: int = 0
    resulting_count: int = 0
    max_wallets: int = 0


@dataclass(frozen=True)
class WalletAdded:
    secondary: SecondaryIdentity
    check: WalletAddCheck


@dataclass(frozen=True)
class UsageSnapshot:
    primary_identity_id: str
    plan_name: str
    period: UsagePeriod
    queries_used: int
    queries_limit: int
    transaction_volume_used: Decimal
    transaction_volume_limit: Optional[Decimal]
    percent_used: int
    transaction_percent_used: int

    @property
    def queries_remaining(self) -> int:
        return max(0, self.queries_limit - self.queries_used)

    @property
    def transaction_volume_remaining(self) -> Optional[Decimal]:
        if self.transaction_volume_limit is None:
            return None
        return max(Decimal("0"), self.transaction_volume_limit - self.transaction_volume_used)


@dataclass(frozen=True)
class QueryCharge:
    """Result of an atomic reserve against the monthly query counter."""
    charged: bool
    used: int
    limit: Optional[int]


# Gate

@dataclass(frozen=True)
class ActionRequest:
    action: ActionType
    amount: Optional[Decimal] = None
    candidate_address: Optional[str] = None
    candidate_chain_id: Optional[str] = None


@dataclass(frozen=True)
class Allow:
    action: ActionType
    details: Dict[str, Any] = field(default_factory=dict)

    allowed = True


@dataclass(frozen=True)
class Deny:
    code: DenyCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    allowed = False


Decision = Union[Allow, Deny, LookupFailed, Invalid]
