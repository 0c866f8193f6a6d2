"""
Billing Service package for the wallet billing layer.

This package decides what a wallet is entitled to. Given a (wallet address,
chain) pair it resolves the owning identity, its effective plan, remaining
quota, and whether a requested action is permitted. It provides:

- app.main: API surface for resolution, wallet management, usage and gating.
- app.plans: Static plan catalog.
- app.identity: Identity resolution, including the degraded stale read path.
- app.wallets: Wallet ownership ledger and de-duplicated wallet counting.
- app.usage: Monthly query and transaction volume accounting.
- app.gate: Quota enforcement rules producing typed decisions.
- app.persistence: Store abstraction with PostgreSQL and in-memory backends.
- app.cache: Redis-backed last-known identity cache.

Guidelines:
- Every decision is recomputed per request; caches never decide correctness.
- Business outcomes are typed results; only infrastructure failures raise.
- Quota increments go through a single atomic reserve in the store.
"""
