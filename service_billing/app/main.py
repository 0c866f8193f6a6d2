"""
Billing service for the wallet billing layer.
"""

import uuid
from datetime import datetime
from typing import Callable, Dict, Optional, Union

from fastapi import Query
from fastapi.responses import JSONResponse
from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import BillingLayerException, ExternalServiceError, ValidationError
from shared.observability import get_observability_manager
from shared.retry import RetryConfig

from .cache.redis_cache import RedisIdentityCache
from .gate.engine import QuotaGate
from .identity.resilient import ResilientIdentityResolver
from .identity.resolver import IdentityResolver
from .models import (
    ActionRequest, ActionType, Allow, Deny, DenyCode, Invalid, LookupFailed,
    NotFound, PlanCapabilities, QueryCharge, ResolvedIdentity,
    PrimaryIdentity, UsageSnapshot, WalletAddCheck,
    WalletAdded, WalletListing, utc_now
)
from .persistence.base import BillingStore
from .persistence.memory import InMemoryStore
from .persistence.postgres import PostgreSQLStore
from .plans.catalog import PlanCatalog
from .schemas import (
    AuthorizeRequest, DashboardResponse, DecisionResponse, IdentityResponse,
    PlanChangeRequest, PlanResponse, QueryChargeResponse,
    RegisterIdentityRequest, SecondaryCreatedResponse, TransactionOutcomeRequest,
    TransactionResponse, TrialResponse, UsageResponse, WalletAddCheckResponse,
    WalletCandidateRequest, WalletEntryResponse, WalletListingResponse
)
from .trial import TrialClock
from .usage.accountant import UsageAccountant
from .validation import validate_wallet_pair
from .wallets.ledger import WalletLedger


QUOTA_DENY_CODES = {DenyCode.TXN_LIMIT_EXCEEDED, DenyCode.QUERY_LIMIT_EXCEEDED}

Outcome = Union[Deny, NotFound, Invalid, LookupFailed]


class BillingService(BaseService):
    """Billing service implementation."""

    def __init__(self,
                 store: Optional[BillingStore] = None,
                 cache: Optional[RedisIdentityCache] = None,
                 config: Optional[ServiceConfig] = None,
                 now: Callable[[], datetime] = utc_now):
        super().__init__("billing", 8021, config)

        self.observability = get_observability_manager(
            "billing",
            log_level=self.config.log_level,
            metrics=self.metrics
        )
        self._now = now

        # Initialize components
        self.catalog = PlanCatalog(self.config.separately_counted_chains)
        self.store = store or self._create_store()
        self.cache = cache or RedisIdentityCache(
            self.config.redis_url,
            self.catalog,
            ttl_seconds=self.config.stale_identity_ttl_seconds
        )
        self.trial_clock = TrialClock(self.config.trial_length_days, now=now)
        self.resolver = ResilientIdentityResolver(
            IdentityResolver(self.store, self.catalog, metrics=self.metrics),
            cache=self.cache,
            retry_config=RetryConfig(
                max_attempts=self.config.lookup_retry_attempts,
                base_delay=self.config.lookup_retry_base_delay,
                max_delay=2.0
            ),
            metrics=self.metrics
        )
        self.ledger = WalletLedger(self.store, self.catalog)
        self.accountant = UsageAccountant(self.store, self.catalog, now=now, metrics=self.metrics)
        self.gate = QuotaGate(
            self.ledger,
            self.accountant,
            self.trial_clock,
            enforce_paid_query_quota=self.config.enforce_paid_query_quota,
            metrics=self.metrics
        )

        self._setup_billing_routes()

    def _create_store(self) -> BillingStore:
        if self.config.store_backend == "memory":
            self.logger.warning("Using in-memory store; data is lost on restart")
            return InMemoryStore()
        return PostgreSQLStore(self.config.postgres_dsn)

    def _setup_billing_routes(self):
        """Set up billing-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "billing",
                "message": "Wallet Billing Layer - Billing Service",
                "version": "1.0.0",
                "capabilities": ["identity_resolution", "wallet_ledger", "usage_accounting", "quota_gate"]
            }

        @self.app.get("/plans")
        async def list_plans():
            """Plan catalog."""
            return [PlanResponse.from_plan(plan) for plan in self.catalog.list_plans()]

        @self.app.get("/identities/resolve")
        async def resolve_identity(
            wallet_address: str = Query(..., description="Wallet address"),
            chain_id: str = Query(..., description="Chain id")
        ):
            """Resolve a wallet pair to its identity and effective plan."""
            resolution = await self.resolver.resolve(wallet_address, chain_id)
            if not isinstance(resolution, ResolvedIdentity):
                return self._outcome_response(resolution)

            self.observability.trace_request(
                wallet_address=resolution.wallet_address,
                chain_id=resolution.chain_id,
                identity_id=resolution.identity_id
            )
            return self._identity_response(resolution)

        @self.app.post("/identities", status_code=201)
        async def register_identity(request: RegisterIdentityRequest):
            """Register a wallet as a primary identity and start its trial."""
            pair = validate_wallet_pair(request.wallet_address, request.chain_id)
            if isinstance(pair, Invalid):
                return self._outcome_response(pair)

            plan = self._plan_from_name(request.plan) if request.plan else None
            now = self._now()
            primary = await self.store.create_primary(PrimaryIdentity(
                id=str(uuid.uuid4()),
                wallet_address=pair[0],
                chain_id=pair[1],
                plan_id=plan.name if plan else None,
                trial_started_at=now,
                created_at=now
            ))

            self.observability.log_business_event(
                "identity_registered",
                identity_id=primary.id,
                chain_id=primary.chain_id,
                plan=plan.name if plan else None
            )

            resolution = await self.resolver.resolve(primary.wallet_address, primary.chain_id)
            if not isinstance(resolution, ResolvedIdentity):
                return self._outcome_response(resolution)
            return self._identity_response(resolution)

        @self.app.post("/identities/{identity_id}/wallets/check")
        async def check_wallet(identity_id: str, request: WalletCandidateRequest):
            """Check whether a wallet can be added to an identity graph."""
            check = await self.ledger.can_add_wallet(identity_id, request.wallet_address, request.chain_id)
            if not isinstance(check, WalletAddCheck):
                return self._outcome_response(check)
            return WalletAddCheckResponse.from_check(check)

        @self.app.post("/identities/{identity_id}/wallets", status_code=201)
        async def add_wallet(identity_id: str, request: WalletCandidateRequest):
            """Bind a wallet to a primary identity as a secondary identity."""
            resolution = await self.resolver.resolve_by_id(identity_id)
            if not isinstance(resolution, ResolvedIdentity):
                return self._outcome_response(resolution)

            decision = await self.gate.authorize(
                ActionRequest(
                    action=ActionType.ADD_WALLET,
                    candidate_address=request.wallet_address,
                    candidate_chain_id=request.chain_id
                ),
                resolution
            )
            if not isinstance(decision, Allow):
                return self._outcome_response(decision)

            added = await self.ledger.add_wallet(
                resolution.primary_identity_id,
                request.wallet_address,
                request.chain_id,
                secondary_id=str(uuid.uuid4()),
                created_at=self._now()
            )
            if isinstance(added, WalletAddCheck):
                # Another add took the last slot after the gate passed
                return self._outcome_response(Deny(
                    code=DenyCode.WALLET_LIMIT_EXCEEDED,
                    message=added.reason,
                    details={
                        "rejection": added.rejection.value,
                        "would_count_toward_limit": added.would_count_toward_limit,
                        "current_count": added.current_count,
                        "max_wallets": added.max_wallets,
                        "plan": resolution.plan_name,
                    }
                ))
            if not isinstance(added, WalletAdded):
                return self._outcome_response(added)
            secondary = added.secondary

            self.observability.log_business_event(
                "wallet_added",
                identity_id=secondary.id,
                parent_identity_id=secondary.parent_identity_id,
                chain_id=secondary.chain_id
            )

            return SecondaryCreatedResponse(
                identity_id=secondary.id,
                parent_identity_id=secondary.parent_identity_id,
                wallet_address=secondary.wallet_address,
                chain_id=secondary.chain_id,
                would_count_toward_limit=added.check.would_count_toward_limit,
                wallet_count=added.check.resulting_count
            )

        @self.app.delete("/identities/{identity_id}/wallets/{secondary_id}")
        async def remove_wallet(identity_id: str, secondary_id: str):
            """Unbind a secondary identity from its primary."""
            secondary = await self.store.get_secondary(secondary_id)
            if secondary is None or secondary.parent_identity_id != identity_id:
                return self._outcome_response(NotFound(identity_id=secondary_id, hint="Unknown secondary identity"))

            await self.store.delete_secondary(secondary_id)
            await self.cache.forget(secondary.wallet_address, secondary.chain_id)

            self.observability.log_business_event(
                "wallet_removed",
                identity_id=secondary_id,
                parent_identity_id=identity_id
            )
            return {"success": True, "message": "Wallet removed"}

        @self.app.get("/identities/{identity_id}/wallets")
        async def list_wallets(identity_id: str):
            """Every wallet in an identity graph with its slot usage."""
            resolution = await self.resolver.resolve_by_id(identity_id)
            if not isinstance(resolution, ResolvedIdentity):
                return self._outcome_response(resolution)

            listing = await self.ledger.list_wallets(resolution.primary_identity_id)
            if not isinstance(listing, WalletListing):
                return self._outcome_response(listing)
            return WalletListingResponse.from_listing(listing)

        @self.app.put("/identities/{identity_id}/plan")
        async def change_plan(identity_id: str, request: PlanChangeRequest):
            """Apply a plan change (upgrade, downgrade or cancellation)."""
            if request.processor_plan_id:
                plan = self.catalog.get_plan_by_processor_id(request.processor_plan_id)
                if plan is None:
                    raise ValidationError(
                        "Unknown payment-processor plan",
                        details={"processor_plan_id": request.processor_plan_id}
                    )
            elif request.plan:
                plan = self._plan_from_name(request.plan)
            else:
                plan = None

            primary = await self.store.set_plan(identity_id, plan.name if plan else None)
            if primary is None:
                return self._outcome_response(NotFound(identity_id=identity_id, hint="Unknown primary identity"))

            self.observability.log_business_event(
                "plan_changed",
                identity_id=identity_id,
                plan=plan.name if plan else None
            )

            resolution = await self.resolver.resolve(primary.wallet_address, primary.chain_id)
            if not isinstance(resolution, ResolvedIdentity):
                return self._outcome_response(resolution)
            return self._identity_response(resolution)

        @self.app.post("/identities/{identity_id}/trial/consume")
        async def consume_trial(identity_id: str):
            """Latch the trial as consumed."""
            primary = await self.store.mark_trial_consumed(identity_id)
            if primary is None:
                return self._outcome_response(NotFound(identity_id=identity_id, hint="Unknown primary identity"))

            self.observability.log_business_event("trial_consumed", identity_id=identity_id)
            return TrialResponse.from_status(
                self.trial_clock.status(primary.trial_started_at, primary.trial_consumed)
            )

        @self.app.get("/identities/{identity_id}/usage")
        async def get_usage(identity_id: str):
            """Usage for an identity; secondaries report their primary's usage."""
            usage = await self.accountant.get_usage(identity_id)
            if not isinstance(usage, UsageSnapshot):
                return self._outcome_response(usage)
            return UsageResponse.from_snapshot(usage)

        @self.app.post("/entitlements/authorize")
        async def authorize(request: AuthorizeRequest):
            """Authorize an action for a wallet pair."""
            resolution = await self.resolver.resolve(request.wallet_address, request.chain_id)
            if isinstance(resolution, ResolvedIdentity):
                self.observability.trace_request(
                    wallet_address=resolution.wallet_address,
                    chain_id=resolution.chain_id,
                    identity_id=resolution.identity_id
                )

            decision = await self.gate.authorize(
                ActionRequest(
                    action=request.action,
                    amount=request.amount,
                    candidate_address=request.candidate_wallet_address,
                    candidate_chain_id=request.candidate_chain_id
                ),
                resolution
            )
            if not isinstance(decision, Allow):
                return self._outcome_response(decision)
            return DecisionResponse(action=decision.action, details=decision.details)

        @self.app.post("/usage/{identity_id}/queries")
        async def charge_query(identity_id: str):
            """Charge one metered query after the action completed."""
            resolution = await self.resolver.resolve_by_id(identity_id)
            if not isinstance(resolution, ResolvedIdentity):
                return self._outcome_response(resolution)

            charge = await self.accountant.charge_query(
                resolution.primary_identity_id,
                resolution.plan.query_quota
            )
            if not isinstance(charge, QueryCharge):
                return self._outcome_response(charge)
            if not charge.charged:
                return self._outcome_response(Deny(
                    code=DenyCode.QUERY_LIMIT_EXCEEDED,
                    message=f"Monthly query limit of {charge.limit} reached",
                    details={"used": charge.used, "limit": charge.limit}
                ))
            return QueryChargeResponse.from_charge(charge)

        @self.app.post("/usage/{identity_id}/transactions", status_code=201)
        async def record_transaction(identity_id: str, request: TransactionOutcomeRequest):
            """Record a transaction outcome against the identity graph."""
            resolution = await self.resolver.resolve_by_id(identity_id)
            if not isinstance(resolution, ResolvedIdentity):
                return self._outcome_response(resolution)

            record = await self.accountant.record_transaction(
                resolution.primary_identity_id,
                request.amount,
                request.status,
                transaction_id=request.transaction_id,
                reference=request.reference
            )
            if isinstance(record, LookupFailed):
                return self._outcome_response(record)
            return TransactionResponse.from_record(record)

        @self.app.get("/dashboard")
        async def dashboard(
            wallet_address: str = Query(..., description="Wallet address"),
            chain_id: str = Query(..., description="Chain id")
        ):
            """Identity, plan, trial, usage and wallets for one wallet."""
            resolution = await self.resolver.resolve(wallet_address, chain_id)
            decision = await self.gate.authorize(ActionRequest(action=ActionType.READ_DASHBOARD), resolution)
            if not isinstance(decision, Allow):
                return self._outcome_response(decision)

            identity = resolution
            usage = await self.accountant.usage_for(identity)
            listing = await self.ledger.list_wallets(identity.primary_identity_id)

            # Last known identity may outlive the store; render what is available
            if not identity.stale:
                for part in (usage, listing):
                    if isinstance(part, (LookupFailed, NotFound)):
                        return self._outcome_response(part)

            wallets = []
            wallet_count, max_wallets = 0, identity.plan.max_wallets
            if isinstance(listing, WalletListing):
                wallets = listing.wallets
                wallet_count = listing.wallet_count
                if not identity.plan.can_view_other_wallets:
                    wallets = [w for w in wallets if w.identity_id == identity.identity_id]

            return DashboardResponse(
                identity=self._identity_response(identity),
                usage=UsageResponse.from_snapshot(usage) if isinstance(usage, UsageSnapshot) else None,
                wallets=[WalletEntryResponse.from_entry(w) for w in wallets],
                wallet_count=wallet_count,
                max_wallets=max_wallets,
                stale=identity.stale
            )

    def _plan_from_name(self, name: str) -> PlanCapabilities:
        plan = self.catalog.find_plan(name)
        if plan is None:
            raise ValidationError("Unknown plan", details={"plan": name})
        return plan

    def _identity_response(self, identity: ResolvedIdentity) -> IdentityResponse:
        return IdentityResponse.from_identity(
            identity,
            self.trial_clock.status(identity.trial_started_at, identity.trial_consumed)
        )

    def _outcome_response(self, outcome: Outcome) -> JSONResponse:
        """Map a typed non-success outcome onto an HTTP error body."""
        if isinstance(outcome, Deny):
            if outcome.code == DenyCode.WALLET_NOT_REGISTERED:
                status_code = 404
            elif outcome.code in QUOTA_DENY_CODES:
                status_code = 429
            else:
                status_code = 403
            error = BillingLayerException(outcome.code.value, outcome.message, outcome.details)
        elif isinstance(outcome, NotFound):
            status_code = 404
            if outcome.wallet_address is not None:
                error = BillingLayerException(
                    DenyCode.WALLET_NOT_REGISTERED.value,
                    outcome.hint,
                    {"wallet_address": outcome.wallet_address, "chain_id": outcome.chain_id}
                )
            else:
                error = BillingLayerException("IDENTITY_NOT_FOUND", outcome.hint, {"identity_id": outcome.identity_id})
        elif isinstance(outcome, Invalid):
            status_code = 400
            error = BillingLayerException(outcome.code, outcome.reason, {"field": outcome.field})
        else:
            status_code = 503
            error = BillingLayerException("LOOKUP_FAILED", outcome.reason, {"retryable": outcome.retryable})

        if status_code == 503:
            self.observability.log_error(error.code, error.message, retryable=outcome.retryable)
        else:
            self.metrics.record_error(error.code)
        return JSONResponse(status_code=status_code, content=error.to_response().model_dump())

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check billing service dependencies."""
        dependencies = {
            "store": "ok" if await self.store.health_check() else "error",
            "redis": "ok" if await self.cache.health_check() else "error",
        }
        return dependencies

    async def start(self):
        """Start billing service components."""
        await self.store.start()
        try:
            await self.cache.start()
        except ExternalServiceError as e:
            # Resolution works without the cache; only the stale fallback is lost
            self.logger.warning("Identity cache unavailable", error=e.message)

        self.logger.info("Billing service started", store=type(self.store).__name__)

    async def stop(self):
        """Stop billing service components."""
        await self.store.stop()
        await self.cache.stop()

        self.logger.info("Billing service stopped")


def create_app():
    """Create billing service application."""
    service = BillingService()
    return service.app


if __name__ == "__main__":
    service = BillingService()
    service.run()
