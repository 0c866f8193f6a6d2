"""
Request and response models for the Billing Service API.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import (
    ActionType, PlanCapabilities, QueryCharge, ResolvedIdentity,
    TransactionRecord, TransactionStatus, TrialStatus, UsageSnapshot,
    WalletAddCheck, WalletEntry, WalletListing
)


class RegisterIdentityRequest(BaseModel):
    """Request model for registering a primary identity."""
    wallet_address: str = Field(..., description="Wallet address (0x + 40 hex)")
    chain_id: str = Field(..., description="Chain id")
    plan: Optional[str] = Field(None, description="Initial plan; omitted means Free")


class WalletCandidateRequest(BaseModel):
    """Wallet pair proposed as a secondary identity."""
    wallet_address: str = Field(..., description="Candidate wallet address")
    chain_id: str = Field(..., description="Candidate chain id")


class PlanChangeRequest(BaseModel):
    """Plan change event. Both fields empty means cancellation."""
    plan: Optional[str] = Field(None, description="Plan name")
    processor_plan_id: Optional[str] = Field(None, description="Payment-processor plan id")


class AuthorizeRequest(BaseModel):
    """Request model for an entitlement decision."""
    wallet_address: str = Field(..., description="Acting wallet address")
    chain_id: str = Field(..., description="Acting chain id")
    action: ActionType = Field(..., description="Action to authorize")
    amount: Optional[Decimal] = Field(None, ge=0, description="Monetary amount for invoices and transactions")
    candidate_wallet_address: Optional[str] = Field(None, description="Wallet to add (add_wallet only)")
    candidate_chain_id: Optional[str] = Field(None, description="Chain of the wallet to add (add_wallet only)")


class TransactionOutcomeRequest(BaseModel):
    """Transaction outcome reported after the chain call."""
    amount: Decimal = Field(..., ge=0, description="Transaction amount")
    status: TransactionStatus = Field(..., description="PENDING, SUCCESS or FAILED")
    transaction_id: Optional[str] = Field(None, description="Existing id to update its status")
    reference: Optional[str] = Field(None, description="Invoice or chain reference")


class PlanResponse(BaseModel):
    name: str
    display_name: str
    max_wallets: int
    query_quota: int
    transaction_volume_quota: Optional[Decimal]
    can_view_other_wallets: bool
    can_add_wallets: bool
    price: Decimal
    billing_period: str
    processor_plan_id: Optional[str]
    is_paid: bool

    @classmethod
    def from_plan(cls, plan: PlanCapabilities) -> "PlanResponse":
        return cls(
            name=plan.name,
            display_name=plan.display_name,
            max_wallets=plan.max_wallets,
            query_quota=plan.query_quota,
            transaction_volume_quota=plan.transaction_volume_quota,
            can_view_other_wallets=plan.can_view_other_wallets,
            can_add_wallets=plan.can_add_wallets,
            price=plan.price,
            billing_period=plan.billing_period,
            processor_plan_id=plan.processor_plan_id,
            is_paid=plan.is_paid,
        )


class TrialResponse(BaseModel):
    active: bool
    days_remaining: int

    @classmethod
    def from_status(cls, status: TrialStatus) -> "TrialResponse":
        return cls(active=status.active, days_remaining=status.days_remaining)


class IdentityResponse(BaseModel):
    """Resolved identity as seen by API callers."""
    kind: str
    identity_id: str
    primary_identity_id: str
    parent_identity_id: Optional[str]
    wallet_address: str
    chain_id: str
    plan: PlanResponse
    trial: TrialResponse
    stale: bool
    resolved_at: datetime

    @classmethod
    def from_identity(cls, identity: ResolvedIdentity, trial: TrialStatus) -> "IdentityResponse":
        return cls(
            kind=identity.kind.value,
            identity_id=identity.identity_id,
            primary_identity_id=identity.primary_identity_id,
            parent_identity_id=identity.parent_identity_id,
            wallet_address=identity.wallet_address,
            chain_id=identity.chain_id,
            plan=PlanResponse.from_plan(identity.plan),
            trial=TrialResponse.from_status(trial),
            stale=identity.stale,
            resolved_at=identity.resolved_at,
        )


class WalletAddCheckResponse(BaseModel):
    can_add: bool
    would_count_toward_limit: bool
    reason: Optional[str]
    rejection: Optional[str]
    current_count: int
    resulting_count: int
    max_wallets: int

    @classmethod
    def from_check(cls, check: WalletAddCheck) -> "WalletAddCheckResponse":
        return cls(
            can_add=check.can_add,
            would_count_toward_limit=check.would_count_toward_limit,
            reason=check.reason,
            rejection=check.rejection.value if check.rejection else None,
            current_count=check.current_count,
            resulting_count=check.resulting_count,
            max_wallets=check.max_wallets,
        )


class WalletEntryResponse(BaseModel):
    identity_id: str
    wallet_address: str
    chain_id: str
    kind: str
    counts_toward_limit: bool

    @classmethod
    def from_entry(cls, entry: WalletEntry) -> "WalletEntryResponse":
        return cls(
            identity_id=entry.identity_id,
            wallet_address=entry.wallet_address,
            chain_id=entry.chain_id,
            kind=entry.kind.value,
            counts_toward_limit=entry.counts_toward_limit,
        )


class WalletListingResponse(BaseModel):
    primary_identity_id: str
    wallets: List[WalletEntryResponse]
    wallet_count: int
    max_wallets: int

    @classmethod
    def from_listing(cls, listing: WalletListing) -> "WalletListingResponse":
        return cls(
            primary_identity_id=listing.primary_identity_id,
            wallets=[WalletEntryResponse.from_entry(w) for w in listing.wallets],
            wallet_count=listing.wallet_count,
            max_wallets=listing.max_wallets,
        )


class SecondaryCreatedResponse(BaseModel):
    identity_id: str
    parent_identity_id: str
    wallet_address: str
    chain_id: str
    would_count_toward_limit: bool
    wallet_count: int


class UsageResponse(BaseModel):
    primary_identity_id: str
    plan: str
    month: int
    year: int
    queries_used: int
    queries_limit: int
    queries_remaining: int
    transaction_volume_used: Decimal
    transaction_volume_limit: Optional[Decimal]
    transaction_volume_remaining: Optional[Decimal]
    percent_used: int
    transaction_percent_used: int
    unlimited_transactions: bool

    @classmethod
    def from_snapshot(cls, usage: UsageSnapshot) -> "UsageResponse":
        return cls(
            primary_identity_id=usage.primary_identity_id,
            plan=usage.plan_name,
            month=usage.period.month,
            year=usage.period.year,
            queries_used=usage.queries_used,
            queries_limit=usage.queries_limit,
            queries_remaining=usage.queries_remaining,
            transaction_volume_used=usage.transaction_volume_used,
            transaction_volume_limit=usage.transaction_volume_limit,
            transaction_volume_remaining=usage.transaction_volume_remaining,
            percent_used=usage.percent_used,
            transaction_percent_used=usage.transaction_percent_used,
            unlimited_transactions=usage.transaction_volume_limit is None,
        )


class DecisionResponse(BaseModel):
    """Allow decision; denials use the standard error body."""
    allowed: bool = True
    action: ActionType
    details: Dict[str, Any] = Field(default_factory=dict)


class QueryChargeResponse(BaseModel):
    charged: bool
    used: int
    limit: Optional[int]

    @classmethod
    def from_charge(cls, charge: QueryCharge) -> "QueryChargeResponse":
        return cls(charged=charge.charged, used=charge.used, limit=charge.limit)


class TransactionResponse(BaseModel):
    transaction_id: str
    primary_identity_id: str
    amount: Decimal
    status: TransactionStatus
    reference: Optional[str]
    created_at: datetime

    @classmethod
    def from_record(cls, record: TransactionRecord) -> "TransactionResponse":
        return cls(
            transaction_id=record.id,
            primary_identity_id=record.primary_identity_id,
            amount=record.amount,
            status=record.status,
            reference=record.reference,
            created_at=record.created_at,
        )


class DashboardResponse(BaseModel):
    """Everything the dashboard renders for one wallet."""
    identity: IdentityResponse
    usage: Optional[UsageResponse]
    wallets: List[WalletEntryResponse]
    wallet_count: int
    max_wallets: int
    stale: bool
