"""
Shared fixtures for Billing Service tests.
"""

from datetime import datetime, timezone

import pytest

from service_billing.app.models import PrimaryIdentity, SecondaryIdentity
from service_billing.app.persistence.memory import InMemoryStore
from service_billing.app.plans.catalog import PlanCatalog
from shared.test_helpers import TestDataFactory


FIXED_NOW = datetime(2025, 7, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now():
    """A mid-month instant used as 'now' across tests."""
    return FIXED_NOW


@pytest.fixture
def store():
    """Create an empty InMemoryStore."""
    return InMemoryStore()


@pytest.fixture
def catalog():
    """Create a PlanCatalog without counts-separately chains."""
    return PlanCatalog()


@pytest.fixture
def register_primary(store):
    """Coroutine factory that registers a primary identity in the store."""

    async def _register(seed, chain_id="eth", plan=None, trial_started_at=None, trial_consumed=False):
        return await store.create_primary(PrimaryIdentity(
            id=f"primary-{seed}-{chain_id}",
            wallet_address=TestDataFactory.wallet_address(seed),
            chain_id=chain_id,
            plan_id=plan,
            trial_started_at=trial_started_at,
            trial_consumed=trial_consumed,
            created_at=FIXED_NOW
        ))

    return _register


@pytest.fixture
def add_secondary(store):
    """Coroutine factory that binds a secondary identity to a primary."""

    async def _add(parent_identity_id, seed, chain_id):
        return await store.create_secondary(SecondaryIdentity(
            id=f"secondary-{seed}-{chain_id}",
            wallet_address=TestDataFactory.wallet_address(seed),
            chain_id=chain_id,
            parent_identity_id=parent_identity_id,
            created_at=FIXED_NOW
        ))

    return _add
