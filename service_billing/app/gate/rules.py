"""
Quota rules evaluated by the enforcement gate.

Each rule names the actions it guards, a deny predicate over the gate
context and the code it reports. Rules run in descending priority; the first
one that fires decides.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from ..models import (
    METERED_ACTIONS, VOLUME_ACTIONS, ActionRequest, ActionType, DenyCode,
    ResolvedIdentity, TrialStatus, UsageSnapshot, WalletAddCheck
)


@dataclass
class GateContext:
    """Everything a rule may look at for one authorization."""
    request: ActionRequest
    identity: ResolvedIdentity
    trial: TrialStatus
    enforce_paid_query_quota: bool = True
    usage: Optional[UsageSnapshot] = None
    wallet_check: Optional[WalletAddCheck] = None

    @property
    def query_quota_enforced(self) -> bool:
        """Quotas apply once the trial is over; paid plans can be switched off by config."""
        if self.trial.active:
            return False
        if self.identity.plan.is_paid:
            return self.enforce_paid_query_quota
        return True


@dataclass
class GateRule:
    """Declarative deny rule."""
    rule_id: str
    name: str
    code: DenyCode
    actions: FrozenSet[ActionType]
    priority: int
    denies: Callable[[GateContext], bool]
    message: Callable[[GateContext], str]
    details: Callable[[GateContext], Dict[str, Any]] = field(default=lambda ctx: {})
    enabled: bool = True

    def applies_to(self, action: ActionType) -> bool:
        return self.enabled and action in self.actions


def _projected_volume(ctx: GateContext) -> Decimal:
    return ctx.usage.transaction_volume_used + ctx.request.amount


def _wallet_limit_denies(ctx: GateContext) -> bool:
    return ctx.wallet_check is not None and not ctx.wallet_check.can_add


def _wallet_limit_details(ctx: GateContext) -> Dict[str, Any]:
    check = ctx.wallet_check
    return {
        "rejection": check.rejection.value if check.rejection else None,
        "would_count_toward_limit": check.would_count_toward_limit,
        "current_count": check.current_count,
        "max_wallets": check.max_wallets,
        "plan": ctx.identity.plan_name,
    }


def _txn_limit_denies(ctx: GateContext) -> bool:
    limit = ctx.identity.plan.transaction_volume_quota
    if limit is None or ctx.usage is None:
        return False
    return _projected_volume(ctx) > limit


def _txn_limit_message(ctx: GateContext) -> str:
    limit = ctx.identity.plan.transaction_volume_quota
    return (
        f"This transaction would exceed your monthly limit of ${limit:,}. "
        f"Current usage: ${ctx.usage.transaction_volume_used:,}"
    )


def _txn_limit_details(ctx: GateContext) -> Dict[str, Any]:
    limit = ctx.identity.plan.transaction_volume_quota
    return {
        "plan": ctx.identity.plan_name,
        "limit": str(limit),
        "current_volume": str(ctx.usage.transaction_volume_used),
        "amount": str(ctx.request.amount),
        "remaining": str(max(Decimal("0"), limit - ctx.usage.transaction_volume_used)),
    }


def _query_limit_denies(ctx: GateContext) -> bool:
    if ctx.usage is None or not ctx.query_quota_enforced:
        return False
    return ctx.usage.queries_used >= ctx.usage.queries_limit


def _query_limit_details(ctx: GateContext) -> Dict[str, Any]:
    return {
        "plan": ctx.identity.plan_name,
        "used": ctx.usage.queries_used,
        "limit": ctx.usage.queries_limit,
        "trial_active": ctx.trial.active,
    }


def default_rules() -> List[GateRule]:
    """The product's quota rules, highest priority first."""
    return [
        GateRule(
            rule_id="wallet-limit",
            name="Wallet ownership and limit",
            code=DenyCode.WALLET_LIMIT_EXCEEDED,
            actions=frozenset({ActionType.ADD_WALLET}),
            priority=300,
            denies=_wallet_limit_denies,
            message=lambda ctx: ctx.wallet_check.reason or "Wallet cannot be added",
            details=_wallet_limit_details,
        ),
        GateRule(
            rule_id="transaction-volume",
            name="Monthly transaction volume",
            code=DenyCode.TXN_LIMIT_EXCEEDED,
            actions=VOLUME_ACTIONS,
            priority=200,
            denies=_txn_limit_denies,
            message=_txn_limit_message,
            details=_txn_limit_details,
        ),
        GateRule(
            rule_id="query-quota",
            name="Monthly query quota",
            code=DenyCode.QUERY_LIMIT_EXCEEDED,
            actions=METERED_ACTIONS,
            priority=100,
            denies=_query_limit_denies,
            message=lambda ctx: (
                f"Monthly query limit of {ctx.usage.queries_limit} reached on the "
                f"{ctx.identity.plan_name} plan. Upgrade to continue."
            ),
            details=_query_limit_details,
        ),
    ]
