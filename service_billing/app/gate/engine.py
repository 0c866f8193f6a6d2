"""
Quota enforcement gate for Billing Service.
"""

import time
from typing import Dict, List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import (
    METERED_ACTIONS, VOLUME_ACTIONS, ActionRequest, ActionType, Allow,
    Decision, Deny, DenyCode, IdentityResolution, Invalid, LookupFailed,
    NotFound, UsageSnapshot, WalletAddCheck
)
from ..trial import TrialClock
from ..usage.accountant import UsageAccountant
from ..wallets.ledger import WalletLedger
from .rules import GateContext, GateRule, default_rules


class QuotaGate:
    """Authorizes an action for a resolved identity.

    The gate only reads. Charging a query or recording a transaction is the
    job of the action's completion step, so an allowed action that later
    fails is never charged.
    """

    def __init__(self, ledger: WalletLedger, accountant: UsageAccountant,
                 trial_clock: TrialClock,
                 enforce_paid_query_quota: bool = True,
                 rules: Optional[List[GateRule]] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.ledger = ledger
        self.accountant = accountant
        self.trial_clock = trial_clock
        self.enforce_paid_query_quota = enforce_paid_query_quota
        self.metrics = metrics
        self.logger = get_logger("billing.quota_gate")
        self.rules: List[GateRule] = sorted(
            rules if rules is not None else default_rules(),
            key=lambda r: r.priority,
            reverse=True
        )

    async def authorize(self, request: ActionRequest, resolution: IdentityResolution) -> Decision:
        """Allow or Deny ``request``; Invalid and LookupFailed pass through."""
        start_time = time.time()
        decision = await self._decide(request, resolution)
        self._record(request.action, decision, time.time() - start_time)
        return decision

    async def _decide(self, request: ActionRequest, resolution: IdentityResolution) -> Decision:
        if isinstance(resolution, (Invalid, LookupFailed)):
            return resolution

        if request.action in VOLUME_ACTIONS and request.amount is None:
            return Invalid(field="amount", reason=f"Amount is required for {request.action.value}")

        if isinstance(resolution, NotFound):
            return self._not_registered(resolution)

        identity = resolution
        if identity.stale and request.action != ActionType.READ_DASHBOARD:
            return LookupFailed(reason="Identity served from last known state; only reads are available")

        context = GateContext(
            request=request,
            identity=identity,
            trial=self.trial_clock.status(identity.trial_started_at, identity.trial_consumed),
            enforce_paid_query_quota=self.enforce_paid_query_quota,
        )

        if request.action == ActionType.ADD_WALLET:
            check = await self.ledger.can_add_wallet(
                identity.primary_identity_id,
                request.candidate_address,
                request.candidate_chain_id
            )
            if isinstance(check, NotFound):
                return self._not_registered(check)
            if not isinstance(check, WalletAddCheck):
                return check
            context.wallet_check = check

        if request.action in METERED_ACTIONS or request.action in VOLUME_ACTIONS:
            usage = await self.accountant.usage_for(identity)
            if not isinstance(usage, UsageSnapshot):
                return usage
            context.usage = usage

        for rule in self.rules:
            if not rule.applies_to(request.action):
                continue
            if rule.denies(context):
                self.logger.info("Action denied",
                                 action=request.action.value,
                                 rule_id=rule.rule_id,
                                 code=rule.code.value,
                                 identity_id=identity.identity_id)
                return Deny(code=rule.code, message=rule.message(context), details=rule.details(context))

        return Allow(action=request.action, details=self._allow_details(context))

    def _not_registered(self, resolution: NotFound) -> Deny:
        details = {
            key: value for key, value in (
                ("wallet_address", resolution.wallet_address),
                ("chain_id", resolution.chain_id),
                ("identity_id", resolution.identity_id),
            ) if value is not None
        }
        return Deny(code=DenyCode.WALLET_NOT_REGISTERED, message=resolution.hint, details=details)

    def _allow_details(self, context: GateContext) -> Dict[str, object]:
        details: Dict[str, object] = {
            "identity_id": context.identity.identity_id,
            "primary_identity_id": context.identity.primary_identity_id,
            "plan": context.identity.plan_name,
            "trial_active": context.trial.active,
            "trial_days_remaining": context.trial.days_remaining,
            "stale": context.identity.stale,
        }
        if context.usage is not None:
            details["queries_used"] = context.usage.queries_used
            details["queries_limit"] = context.usage.queries_limit
        if context.wallet_check is not None:
            details["would_count_toward_limit"] = context.wallet_check.would_count_toward_limit
            details["resulting_count"] = context.wallet_check.resulting_count
        return details

    def _record(self, action: ActionType, decision: Decision, duration: float):
        if not self.metrics:
            return
        if isinstance(decision, Allow):
            outcome, code = "allow", ""
        elif isinstance(decision, Deny):
            outcome, code = "deny", decision.code.value
        elif isinstance(decision, LookupFailed):
            outcome, code = "lookup_failed", ""
        else:
            outcome, code = "invalid", decision.code
        self.metrics.increment_counter("entitlement_decisions_total",
                                       action=action.value, decision=outcome, code=code)
        histogram = self.metrics.get_metric("entitlement_check_duration_seconds")
        if histogram is not None:
            histogram.labels(action=action.value).observe(duration)
