"""
Degraded read path for identity resolution.
"""

from typing import Optional

from shared.errors import StoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_on_exception

from ..cache.redis_cache import RedisIdentityCache
from ..models import IdentityResolution, Invalid, LookupFailed, ResolvedIdentity
from ..validation import validate_wallet_pair
from .resolver import IdentityResolver


class ResilientIdentityResolver:
    """Retries LookupFailed with backoff, then falls back to the last known identity.

    A fallback resolution carries ``stale=True`` so callers can switch to a
    read-only mode. NotFound and Invalid are never retried.
    """

    def __init__(self, resolver: IdentityResolver,
                 cache: Optional[RedisIdentityCache] = None,
                 retry_config: Optional[RetryConfig] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.resolver = resolver
        self.cache = cache
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)
        self.metrics = metrics
        self.logger = get_logger("billing.resilient_resolver")

    async def resolve(self, wallet_address: Optional[str], chain_id: Optional[str]) -> IdentityResolution:
        """Resolve with bounded retries and a stale fallback."""

        async def resolve_identity() -> IdentityResolution:
            result = await self.resolver.resolve(wallet_address, chain_id)
            if isinstance(result, LookupFailed) and result.retryable:
                raise StoreError(result.reason)
            return result

        try:
            result = await retry_on_exception((StoreError,), self.retry_config)(resolve_identity)()
        except RetryError as e:
            return await self._fallback(wallet_address, chain_id, e)

        if isinstance(result, ResolvedIdentity) and self.cache is not None:
            await self.cache.remember(result)
        return result

    async def resolve_by_id(self, identity_id: str) -> IdentityResolution:
        """Resolve an identity id with bounded retries; no stale fallback."""

        async def resolve_identity_id() -> IdentityResolution:
            result = await self.resolver.resolve_by_id(identity_id)
            if isinstance(result, LookupFailed) and result.retryable:
                raise StoreError(result.reason)
            return result

        try:
            return await retry_on_exception((StoreError,), self.retry_config)(resolve_identity_id)()
        except RetryError as e:
            return LookupFailed(reason=str(e.last_exception))

    async def _fallback(self, wallet_address: Optional[str], chain_id: Optional[str],
                        error: RetryError) -> IdentityResolution:
        reason = str(error.last_exception)
        pair = validate_wallet_pair(wallet_address, chain_id)
        if isinstance(pair, Invalid) or self.cache is None:
            return LookupFailed(reason=reason)

        stale = await self.cache.last_known(*pair)
        if stale is None:
            self.logger.error("Identity lookup failed with no last known state",
                              wallet_address=pair[0],
                              chain_id=pair[1],
                              attempts=error.attempts)
            return LookupFailed(reason=reason)

        self.logger.warning("Serving last known identity",
                            wallet_address=pair[0],
                            chain_id=pair[1],
                            identity_id=stale.identity_id,
                            resolved_at=stale.resolved_at.isoformat())
        if self.metrics:
            self.metrics.increment_counter("identity_resolutions_total", outcome="stale")
        return stale
