"""
Billing service client for other services.
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Union

import httpx
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import ExternalServiceError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception

from .models import (
    ActionType, Allow, Decision, Deny, DenyCode, Invalid, LookupFailed,
    NotFound, QueryCharge
)


class BillingClient:
    """Client for communicating with the Billing service.

    HTTP outcomes come back as the same typed results the engine produces:
    Allow, Deny, NotFound, Invalid or LookupFailed. Transport failures are
    retried, then counted by the circuit breaker; once exhausted the caller
    gets LookupFailed rather than an exception.
    """

    def __init__(self, billing_service_url: str,
                 retry_config: Optional[RetryConfig] = None,
                 timeout: float = 10.0):
        self.billing_service_url = billing_service_url.rstrip("/")
        self.timeout = timeout
        self.logger = get_logger("billing.client")
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            expected_exception=ExternalServiceError,
            name="billing_service"
        )

        # Configure retry for billing service calls
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=1.0,
            max_delay=10.0,
            exponential_base=2.0,
            jitter=True
        )

    async def authorize(self, wallet_address: str, chain_id: str, action: ActionType,
                        amount: Optional[Decimal] = None,
                        candidate_wallet_address: Optional[str] = None,
                        candidate_chain_id: Optional[str] = None) -> Decision:
        """Ask the billing service whether an action may proceed."""
        payload: Dict[str, Any] = {
            "wallet_address": wallet_address,
            "chain_id": chain_id,
            "action": action.value,
        }
        if amount is not None:
            payload["amount"] = str(amount)
        if candidate_wallet_address:
            payload["candidate_wallet_address"] = candidate_wallet_address
        if candidate_chain_id:
            payload["candidate_chain_id"] = candidate_chain_id

        response = await self._request("POST", "/entitlements/authorize", json=payload)
        if isinstance(response, LookupFailed):
            return response

        if response.status_code == 200:
            body = response.json()
            return Allow(action=ActionType(body["action"]), details=body.get("details", {}))
        return self._outcome_from_error(response)

    async def charge_query(self, identity_id: str) -> Union[QueryCharge, Deny, NotFound, LookupFailed, Invalid]:
        """Charge one metered query once the caller's action succeeded."""
        response = await self._request("POST", f"/usage/{identity_id}/queries")
        if isinstance(response, LookupFailed):
            return response

        if response.status_code == 200:
            body = response.json()
            return QueryCharge(charged=body["charged"], used=body["used"], limit=body.get("limit"))
        return self._outcome_from_error(response)

    async def record_transaction(self, identity_id: str, amount: Decimal, status: str,
                                 transaction_id: Optional[str] = None,
                                 reference: Optional[str] = None) -> Union[Dict[str, Any], NotFound, LookupFailed, Invalid, Deny]:
        """Report a transaction outcome after the chain call."""
        payload: Dict[str, Any] = {"amount": str(amount), "status": status}
        if transaction_id:
            payload["transaction_id"] = transaction_id
        if reference:
            payload["reference"] = reference

        response = await self._request("POST", f"/usage/{identity_id}/transactions", json=payload)
        if isinstance(response, LookupFailed):
            return response

        if response.status_code == 201:
            return response.json()
        return self._outcome_from_error(response)

    async def _request(self, method: str, path: str, **kwargs) -> Union[httpx.Response, LookupFailed]:
        """Send a request through retry and the circuit breaker."""

        @retry_on_exception((ExternalServiceError,), config=self.retry_config)
        async def send_request() -> httpx.Response:
            return await self.circuit_breaker.call(self._send, method, path, **kwargs)

        try:
            return await send_request()
        except CircuitBreakerOpenException as e:
            self.logger.warning("Billing service circuit open", path=path)
            return LookupFailed(reason=str(e))
        except RetryError as e:
            self.logger.error("Billing service unavailable", path=path, error=str(e.last_exception))
            return LookupFailed(reason="Billing service unavailable")

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, f"{self.billing_service_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            self.logger.error("Billing service HTTP error", path=path, error=str(e))
            raise ExternalServiceError("billing", str(e), details={"path": path})

        # 503 covers both an unreachable store and a restarting service
        if response.status_code >= 500:
            raise ExternalServiceError(
                "billing",
                f"status {response.status_code}",
                details={"path": path, "status_code": response.status_code}
            )
        return response

    @staticmethod
    def _outcome_from_error(response: httpx.Response) -> Union[Deny, NotFound, Invalid, LookupFailed]:
        try:
            body = response.json()
        except ValueError:
            return LookupFailed(reason=f"Unexpected response status {response.status_code}", retryable=False)

        code = body.get("code", "")
        message = body.get("message", "")
        details = body.get("details") or {}

        if code in DenyCode.__members__ and response.status_code in (403, 404, 429):
            return Deny(code=DenyCode(code), message=message, details=details)
        if response.status_code == 404:
            return NotFound(identity_id=details.get("identity_id"), hint=message)
        if response.status_code in (400, 422):
            return Invalid(field=details.get("field", "request"), reason=message)
        return LookupFailed(reason=message or f"Unexpected response status {response.status_code}", retryable=False)
