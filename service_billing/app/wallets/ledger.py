"""
Wallet ownership ledger for Billing Service.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from shared.errors import StoreError
from shared.logging import get_logger

from ..models import (
    IdentityKind, Invalid, LookupFailed, NotFound, PlanCapabilities,
    PrimaryIdentity, SecondaryIdentity, WalletAddCheck, WalletAdded,
    WalletEntry, WalletListing, WalletRejection
)
from ..persistence.base import BillingStore
from ..plans.catalog import PlanCatalog
from ..validation import validate_wallet_pair


WalletAddResult = Union[WalletAddCheck, NotFound, LookupFailed, Invalid]
WalletAddOutcome = Union[WalletAdded, WalletAddCheck, LookupFailed, Invalid]
WalletListingResult = Union[WalletListing, NotFound, LookupFailed]

REJECTION_MESSAGES = {
    WalletRejection.OWN_PRIMARY_WALLET: "This wallet is your own primary wallet",
    WalletRejection.REGISTERED_TO_ANOTHER_ACCOUNT: "This wallet is already registered to another account",
    WalletRejection.ALREADY_ADDED: "This wallet was already added by you",
}


def count_distinct_wallets(pairs: Iterable[Tuple[str, str]],
                           counts_separately_chains: FrozenSet[str]) -> int:
    """De-duplicated wallet count for an identity graph.

    Entries sharing an address count once across ordinary chains. Every entry
    on a counts-separately chain takes its own slot, even when the address
    also appears elsewhere.
    """
    shared: Dict[str, bool] = {}
    separate = 0
    for address, chain_id in pairs:
        if chain_id in counts_separately_chains:
            separate += 1
        else:
            shared[address] = True
    return len(shared) + separate


class WalletLedger:
    """Enumerates an identity graph and decides whether a wallet may join it."""

    def __init__(self, store: BillingStore, catalog: PlanCatalog):
        self.store = store
        self.catalog = catalog
        self.logger = get_logger("billing.wallet_ledger")

    async def can_add_wallet(self, primary_identity_id: str,
                             candidate_address: Optional[str],
                             candidate_chain_id: Optional[str]) -> WalletAddResult:
        """Check a candidate wallet against duplicates and the plan's wallet limit."""
        pair = validate_wallet_pair(candidate_address, candidate_chain_id)
        if isinstance(pair, Invalid):
            return pair
        address, chain = pair

        try:
            primary = await self.store.get_primary(primary_identity_id)
            if primary is None:
                return NotFound(identity_id=primary_identity_id, hint="Unknown primary identity")

            plan = self.catalog.get_plan(primary.plan_id)
            secondaries = await self.store.list_secondaries(primary.id)
            graph = self._graph_pairs(primary, secondaries)
            current = count_distinct_wallets(graph, plan.counts_separately_chains)

            rejection = await self._duplicate_rejection(primary, address, chain)

        except StoreError as e:
            self.logger.warning("Wallet ledger lookup failed",
                                identity_id=primary_identity_id,
                                error=e.message)
            return LookupFailed(reason=e.message)

        if rejection is not None:
            return WalletAddCheck(
                can_add=False,
                would_count_toward_limit=False,
                reason=REJECTION_MESSAGES[rejection],
                rejection=rejection,
                current_count=current,
                resulting_count=current,
                max_wallets=plan.max_wallets,
            )

        return self._limit_check(primary, secondaries, address, chain)

    async def add_wallet(self, primary_identity_id: str,
                         candidate_address: Optional[str],
                         candidate_chain_id: Optional[str],
                         secondary_id: str,
                         created_at: datetime) -> WalletAddOutcome:
        """Bind a wallet as a secondary identity, re-checking the limit with the parent locked.

        Two adds racing for the last slot both pass can_add_wallet; the store
        runs the limit check again under its per-primary lock so only one lands.
        """
        pair = validate_wallet_pair(candidate_address, candidate_chain_id)
        if isinstance(pair, Invalid):
            return pair
        address, chain = pair

        checks: List[WalletAddCheck] = []

        def admit(primary: PrimaryIdentity, secondaries: List[SecondaryIdentity]) -> bool:
            check = self._limit_check(primary, secondaries, address, chain)
            checks.append(check)
            return check.can_add

        try:
            secondary = await self.store.create_secondary(
                SecondaryIdentity(
                    id=secondary_id,
                    wallet_address=address,
                    chain_id=chain,
                    parent_identity_id=primary_identity_id,
                    created_at=created_at
                ),
                admit=admit
            )
        except StoreError as e:
            self.logger.warning("Wallet add failed",
                                identity_id=primary_identity_id,
                                error=e.message)
            return LookupFailed(reason=e.message)

        if secondary is None:
            return checks[-1]
        return WalletAdded(secondary=secondary, check=checks[-1])

    def _limit_check(self, primary: PrimaryIdentity, secondaries: List[SecondaryIdentity],
                     address: str, chain: str) -> WalletAddCheck:
        plan = self.catalog.get_plan(primary.plan_id)
        graph = self._graph_pairs(primary, secondaries)
        current = count_distinct_wallets(graph, plan.counts_separately_chains)
        resulting = count_distinct_wallets(graph + [(address, chain)], plan.counts_separately_chains)
        would_count = resulting > current

        if would_count and resulting > plan.max_wallets:
            self.logger.info("Wallet add rejected by plan limit",
                             identity_id=primary.id,
                             plan=plan.name,
                             current_count=current,
                             max_wallets=plan.max_wallets)
            return WalletAddCheck(
                can_add=False,
                would_count_toward_limit=True,
                reason=self._limit_message(plan),
                rejection=WalletRejection.OVER_LIMIT,
                current_count=current,
                resulting_count=resulting,
                max_wallets=plan.max_wallets,
            )

        return WalletAddCheck(
            can_add=True,
            would_count_toward_limit=would_count,
            current_count=current,
            resulting_count=resulting,
            max_wallets=plan.max_wallets,
        )

    async def list_wallets(self, primary_identity_id: str) -> WalletListingResult:
        """Every wallet bound to a primary, primary first, with slot flags."""
        try:
            primary = await self.store.get_primary(primary_identity_id)
            if primary is None:
                return NotFound(identity_id=primary_identity_id, hint="Unknown primary identity")
            secondaries = await self.store.list_secondaries(primary.id)
        except StoreError as e:
            return LookupFailed(reason=e.message)

        plan = self.catalog.get_plan(primary.plan_id)
        separate = plan.counts_separately_chains
        seen_addresses = set()
        wallets: List[WalletEntry] = []

        rows = [(primary.id, primary.wallet_address, primary.chain_id, IdentityKind.PRIMARY)]
        rows += [(s.id, s.wallet_address, s.chain_id, IdentityKind.SECONDARY) for s in secondaries]

        for identity_id, address, chain_id, kind in rows:
            if chain_id in separate:
                counts = True
            else:
                counts = address not in seen_addresses
                seen_addresses.add(address)
            wallets.append(WalletEntry(
                identity_id=identity_id,
                wallet_address=address,
                chain_id=chain_id,
                kind=kind,
                counts_toward_limit=counts,
            ))

        return WalletListing(
            primary_identity_id=primary.id,
            wallets=wallets,
            wallet_count=sum(1 for w in wallets if w.counts_toward_limit),
            max_wallets=plan.max_wallets,
        )

    async def _duplicate_rejection(self, primary: PrimaryIdentity,
                                   address: str, chain: str) -> Optional[WalletRejection]:
        if primary.wallet_address == address and primary.chain_id == chain:
            return WalletRejection.OWN_PRIMARY_WALLET

        if await self.store.get_primary_by_wallet(address, chain) is not None:
            return WalletRejection.REGISTERED_TO_ANOTHER_ACCOUNT

        existing = await self.store.get_secondary_by_wallet(address, chain)
        if existing is not None:
            if existing.parent_identity_id != primary.id:
                return WalletRejection.REGISTERED_TO_ANOTHER_ACCOUNT
            return WalletRejection.ALREADY_ADDED

        return None

    @staticmethod
    def _graph_pairs(primary: PrimaryIdentity,
                     secondaries: List[SecondaryIdentity]) -> List[Tuple[str, str]]:
        pairs = [(primary.wallet_address, primary.chain_id)]
        pairs.extend((s.wallet_address, s.chain_id) for s in secondaries)
        return pairs

    @staticmethod
    def _limit_message(plan: PlanCapabilities) -> str:
        noun = "wallet" if plan.max_wallets == 1 else "wallets"
        return f"Your {plan.name} plan allows {plan.max_wallets} {noun}; upgrade to add more"
