"""
Unit tests for the retrying identity resolver.
"""

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from service_billing.app.cache.redis_cache import RedisIdentityCache
from service_billing.app.identity.resilient import ResilientIdentityResolver
from service_billing.app.identity.resolver import IdentityResolver
from service_billing.app.models import (
    IdentityKind, Invalid, LookupFailed, NotFound, ResolvedIdentity
)
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from shared.test_helpers import TestDataFactory


ADDRESS = TestDataFactory.wallet_address(1)


class TestResilientIdentityResolver:
    """Test cases for ResilientIdentityResolver."""

    @pytest.fixture
    def identity(self, catalog):
        """A fresh primary resolution."""
        return ResolvedIdentity(
            kind=IdentityKind.PRIMARY,
            identity_id="primary-1-eth",
            primary_identity_id="primary-1-eth",
            wallet_address=ADDRESS,
            chain_id="eth",
            plan=catalog.get_plan("Pro"),
        )

    @pytest.fixture
    def inner(self):
        """Mock IdentityResolver."""
        inner = MagicMock(spec=IdentityResolver)
        inner.resolve = AsyncMock()
        inner.resolve_by_id = AsyncMock()
        return inner

    @pytest.fixture
    def cache(self):
        """Mock RedisIdentityCache."""
        cache = MagicMock(spec=RedisIdentityCache)
        cache.remember = AsyncMock(return_value=True)
        cache.last_known = AsyncMock(return_value=None)
        return cache

    @pytest.fixture
    def metrics(self):
        """Create a billing MetricsCollector."""
        return MetricsCollector("billing")

    @pytest.fixture
    def resolver(self, inner, cache, metrics):
        """Create ResilientIdentityResolver without retry delays."""
        return ResilientIdentityResolver(
            inner, cache,
            retry_config=RetryConfig(max_attempts=3, base_delay=0.0, jitter=False),
            metrics=metrics
        )

    @pytest.mark.asyncio
    async def test_success_is_remembered(self, resolver, inner, cache, identity):
        """Test fresh resolutions are cached for later fallback."""
        inner.resolve.return_value = identity

        result = await resolver.resolve(ADDRESS, "eth")

        assert result is identity
        cache.remember.assert_awaited_once_with(identity)

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, resolver, inner, identity):
        """Test a LookupFailed followed by success resolves."""
        inner.resolve.side_effect = [LookupFailed(reason="timeout"), identity]

        result = await resolver.resolve(ADDRESS, "eth")

        assert result is identity
        assert inner.resolve.await_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", [
        NotFound(wallet_address=ADDRESS, chain_id="eth"),
        Invalid(field="chain_id", reason="Chain id is required"),
        LookupFailed(reason="Parent identity missing", retryable=False),
    ])
    async def test_definitive_outcomes_not_retried(self, resolver, inner, cache, outcome):
        """Test only retryable failures are retried."""
        inner.resolve.return_value = outcome

        result = await resolver.resolve(ADDRESS, "eth")

        assert result == outcome
        assert inner.resolve.await_count == 1
        cache.remember.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhausted_retries_serve_last_known(self, resolver, inner, cache, identity, metrics):
        """Test the stale fallback after every attempt fails."""
        stale = replace(identity, stale=True)
        inner.resolve.return_value = LookupFailed(reason="connection refused")
        cache.last_known.return_value = stale

        result = await resolver.resolve(ADDRESS.upper().replace("0X", "0x"), "eth")

        assert result is stale
        assert inner.resolve.await_count == 3
        cache.last_known.assert_awaited_once_with(ADDRESS, "eth")
        assert metrics.registry.get_sample_value("identity_resolutions_total", {"outcome": "stale"}) == 1.0

    @pytest.mark.asyncio
    async def test_exhausted_retries_without_cache_entry(self, resolver, inner, cache):
        """Test LookupFailed when nothing is cached."""
        inner.resolve.return_value = LookupFailed(reason="connection refused")

        result = await resolver.resolve(ADDRESS, "eth")

        assert isinstance(result, LookupFailed)
        assert result.reason == "connection refused"

    @pytest.mark.asyncio
    async def test_no_cache_configured(self, inner):
        """Test the resolver works without a cache."""
        resolver = ResilientIdentityResolver(
            inner, None, retry_config=RetryConfig(max_attempts=2, base_delay=0.0, jitter=False)
        )
        inner.resolve.return_value = LookupFailed(reason="connection refused")

        result = await resolver.resolve(ADDRESS, "eth")

        assert isinstance(result, LookupFailed)
        assert inner.resolve.await_count == 2

    @pytest.mark.asyncio
    async def test_resolve_by_id_has_no_fallback(self, resolver, inner, cache):
        """Test id lookups retry but never serve stale state."""
        inner.resolve_by_id.return_value = LookupFailed(reason="connection refused")

        result = await resolver.resolve_by_id("primary-1-eth")

        assert isinstance(result, LookupFailed)
        assert inner.resolve_by_id.await_count == 3
        cache.last_known.assert_not_called()
