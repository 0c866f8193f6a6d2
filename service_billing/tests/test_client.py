"""
Unit tests for the Billing service client.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from service_billing.app.client import BillingClient
from service_billing.app.models import (
    ActionType, Allow, Deny, DenyCode, Invalid, LookupFailed, NotFound, QueryCharge
)
from shared.retry import RetryConfig
from shared.test_helpers import TestDataFactory


BASE_URL = "http://localhost:8021"
ADDRESS = TestDataFactory.wallet_address(1)


def _response(status_code, body, path="/entitlements/authorize"):
    return httpx.Response(
        status_code=status_code,
        json=body,
        request=httpx.Request("POST", f"{BASE_URL}{path}")
    )


class TestBillingClient:
    """Test cases for BillingClient."""

    @pytest.fixture
    def billing_client(self):
        """Create BillingClient without retry delays."""
        return BillingClient(
            BASE_URL,
            retry_config=RetryConfig(max_attempts=2, base_delay=0.0, jitter=False)
        )

    @pytest.mark.asyncio
    async def test_authorize_allow(self, billing_client):
        """Test a 200 becomes Allow."""
        body = {"allowed": True, "action": "create_invoice", "details": {"plan": "Pro"}}

        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=_response(200, body))
            mock_client.return_value.__aenter__.return_value.request = request

            result = await billing_client.authorize(ADDRESS, "eth", ActionType.CREATE_INVOICE,
                                                    amount=Decimal("400"))

        assert isinstance(result, Allow)
        assert result.action == ActionType.CREATE_INVOICE
        assert result.details == {"plan": "Pro"}
        method, url = request.call_args[0]
        assert (method, url) == ("POST", f"{BASE_URL}/entitlements/authorize")
        assert request.call_args[1]["json"]["amount"] == "400"

    @pytest.mark.asyncio
    async def test_authorize_quota_deny(self, billing_client):
        """Test a 429 with a deny code becomes Deny."""
        body = {"code": "TXN_LIMIT_EXCEEDED", "message": "over", "details": {"limit": "20000"}}

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=_response(429, body)
            )

            result = await billing_client.authorize(ADDRESS, "eth", ActionType.CREATE_INVOICE,
                                                    amount=Decimal("600"))

        assert isinstance(result, Deny)
        assert result.code == DenyCode.TXN_LIMIT_EXCEEDED
        assert result.details == {"limit": "20000"}

    @pytest.mark.asyncio
    async def test_authorize_unregistered_wallet(self, billing_client):
        """Test a 404 WALLET_NOT_REGISTERED stays a Deny."""
        body = {"code": "WALLET_NOT_REGISTERED", "message": "Register this wallet first", "details": {}}

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=_response(404, body)
            )

            result = await billing_client.authorize(ADDRESS, "eth", ActionType.READ_DASHBOARD)

        assert isinstance(result, Deny)
        assert result.code == DenyCode.WALLET_NOT_REGISTERED

    @pytest.mark.asyncio
    async def test_invalid_input(self, billing_client):
        """Test a 400 becomes Invalid."""
        body = {"code": "INVALID_CHAIN_ID", "message": "Chain id is required", "details": {"field": "chain_id"}}

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=_response(400, body)
            )

            result = await billing_client.authorize(ADDRESS, "", ActionType.READ_DASHBOARD)

        assert isinstance(result, Invalid)
        assert result.field == "chain_id"

    @pytest.mark.asyncio
    async def test_charge_query(self, billing_client):
        """Test a successful query charge."""
        body = {"charged": True, "used": 12, "limit": 100}

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=_response(200, body, "/usage/primary-1/queries")
            )

            result = await billing_client.charge_query("primary-1")

        assert result == QueryCharge(charged=True, used=12, limit=100)

    @pytest.mark.asyncio
    async def test_charge_query_unknown_identity(self, billing_client):
        """Test a 404 IDENTITY_NOT_FOUND becomes NotFound."""
        body = {"code": "IDENTITY_NOT_FOUND", "message": "Unknown identity", "details": {"identity_id": "nope"}}

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                return_value=_response(404, body, "/usage/nope/queries")
            )

            result = await billing_client.charge_query("nope")

        assert isinstance(result, NotFound)
        assert result.identity_id == "nope"

    @pytest.mark.asyncio
    async def test_record_transaction(self, billing_client):
        """Test a 201 returns the stored transaction."""
        body = {"transaction_id": "tx-1", "status": "SUCCESS", "amount": "250"}

        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=_response(201, body, "/usage/primary-1/transactions"))
            mock_client.return_value.__aenter__.return_value.request = request

            result = await billing_client.record_transaction("primary-1", Decimal("250"), "SUCCESS",
                                                             transaction_id="tx-1")

        assert result == body
        assert request.call_args[1]["json"] == {"amount": "250", "status": "SUCCESS", "transaction_id": "tx-1"}

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, billing_client):
        """Test repeated 503s become LookupFailed."""
        body = {"code": "LOOKUP_FAILED", "message": "Store unavailable", "details": {}}

        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(return_value=_response(503, body))
            mock_client.return_value.__aenter__.return_value.request = request

            result = await billing_client.authorize(ADDRESS, "eth", ActionType.METERED_QUERY)

        assert isinstance(result, LookupFailed)
        assert request.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_error(self, billing_client):
        """Test transport errors become LookupFailed."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.request = AsyncMock(
                side_effect=httpx.ConnectError("connection refused")
            )

            result = await billing_client.authorize(ADDRESS, "eth", ActionType.METERED_QUERY)

        assert isinstance(result, LookupFailed)

    @pytest.mark.asyncio
    async def test_circuit_opens_after_failures(self, billing_client):
        """Test the breaker stops calling a failing service."""
        with patch('httpx.AsyncClient') as mock_client:
            request = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
            mock_client.return_value.__aenter__.return_value.request = request

            await billing_client.authorize(ADDRESS, "eth", ActionType.METERED_QUERY)
            await billing_client.authorize(ADDRESS, "eth", ActionType.METERED_QUERY)
            calls_before = request.await_count
            result = await billing_client.authorize(ADDRESS, "eth", ActionType.METERED_QUERY)

        assert billing_client.circuit_breaker.is_open()
        assert isinstance(result, LookupFailed)
        assert request.await_count == calls_before
