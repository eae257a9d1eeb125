"""
Flutterwave v3 gateway.

Tokenized charges use the idempotency key as tx_ref, and every charge first
looks the reference up so that a repeated key returns the earlier success
instead of charging the card again.
"""
from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from care_billing.core.circuit_breaker import CircuitBreaker
from care_billing.core.config import settings
from care_billing.core.exceptions import GatewayFailureError, ServiceTimeoutError
from care_billing.core.logging import get_logger
from care_billing.core.money import Money
from care_billing.domain.gateway.base import ChargeResult, PaymentGateway, TokenCaptureResult

logger = get_logger(__name__)

SUCCESSFUL_STATUSES = {"successful", "succeeded"}


class FlutterwaveGateway(PaymentGateway):
    """
    Flutterwave REST client.

    Endpoints:
    - POST /v3/tokenized-charges - charge a saved card token
    - GET /v3/transactions/verify_by_reference - look a tx_ref up
    - POST /v3/payments - hosted checkout for card re-tokenization
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._base_url = base_url or settings.FLUTTERWAVE_BASE_URL
        self._secret_key = secret_key if secret_key is not None else settings.FLUTTERWAVE_SECRET_KEY
        self._timeout = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "flutterwave"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> dict:
        """Single HTTP call behind the circuit breaker. Non-JSON or 5xx answers raise."""

        async def _send() -> dict:
            async with self._client() as client:
                try:
                    response = await client.request(method, path, **kwargs)
                except httpx.TimeoutException:
                    raise ServiceTimeoutError(self.provider_name, self._timeout) from None
                except httpx.RequestError as exc:
                    raise GatewayFailureError(
                        f"{operation} network error: {exc}",
                        details={"operation": operation, "network_error": True},
                    ) from exc

            if response.status_code >= 500:
                raise GatewayFailureError.from_response(operation, response)
            try:
                return response.json()
            except ValueError:
                raise GatewayFailureError.from_response(
                    operation, response, message=f"{operation} returned a non-JSON body"
                ) from None

        return await self._circuit_breaker.execute(_send)

    @staticmethod
    def _parse_charge(body: dict) -> ChargeResult:
        data = body.get("data") or {}
        if body.get("status") == "success" and data:
            charge_status = str(data.get("status", "")).lower()
            if charge_status in SUCCESSFUL_STATUSES:
                return ChargeResult.succeeded(str(data.get("id")))
            return ChargeResult.failed(
                data.get("processor_response") or f"Charge {charge_status or 'not successful'}"
            )
        return ChargeResult.failed(body.get("message") or "Unknown error from payment provider")

    async def verify_charge(self, idempotency_key: str) -> Optional[ChargeResult]:
        body = await self._request(
            "GET",
            "/v3/transactions/verify_by_reference",
            "verify_by_reference",
            params={"tx_ref": idempotency_key},
        )
        if body.get("status") != "success" or not body.get("data"):
            return None
        return self._parse_charge(body)

    async def charge(
        self,
        token: str,
        amount: Money,
        idempotency_key: str,
        *,
        email: Optional[str] = None,
    ) -> ChargeResult:
        if not self._secret_key:
            raise GatewayFailureError("FLUTTERWAVE_SECRET_KEY is not configured")

        previous = await self.verify_charge(idempotency_key)
        if previous is not None and previous.success:
            logger.info(
                "Charge already settled at gateway, reusing result",
                extra_data={
                    "tx_ref": idempotency_key,
                    "gateway_transaction_id": previous.gateway_transaction_id,
                },
            )
            return previous

        logger.info(
            "Initiating tokenized charge",
            extra_data={"tx_ref": idempotency_key, "amount": str(amount.amount), "currency": amount.currency},
        )
        body = await self._request(
            "POST",
            "/v3/tokenized-charges",
            "tokenized_charge",
            json={
                "token": token,
                "currency": amount.currency,
                "amount": str(amount.amount),
                "email": email,
                "tx_ref": idempotency_key,
                "narration": f"Recurring care service - {idempotency_key}",
            },
        )
        result = self._parse_charge(body)
        if not result.success:
            logger.warning(
                "Tokenized charge declined",
                extra_data={"tx_ref": idempotency_key, "reason": result.failure_reason},
            )
        return result

    async def initiate_token_capture(
        self,
        reference: str,
        amount: Money,
        *,
        email: Optional[str] = None,
    ) -> TokenCaptureResult:
        body = await self._request(
            "POST",
            "/v3/payments",
            "initiate_payment",
            json={
                "tx_ref": reference,
                "amount": str(amount.amount),
                "currency": amount.currency,
                "customer": {"email": email},
                "payment_options": "card",
                "customizations": {"title": "Update payment method"},
            },
        )
        link = (body.get("data") or {}).get("link")
        if body.get("status") != "success" or not link:
            raise GatewayFailureError(
                body.get("message") or "Payment link was not returned",
                details={"operation": "initiate_payment", "tx_ref": reference},
            )
        return TokenCaptureResult(reference=reference, authorization_url=link)


async def charge_with_timeout(
    gateway: PaymentGateway,
    token: str,
    amount: Money,
    idempotency_key: str,
    *,
    email: Optional[str] = None,
    timeout_seconds: float | None = None,
) -> ChargeResult:
    """Bound the whole charge (including verification) by GATEWAY_TIMEOUT_SECONDS"""
    timeout = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(
            gateway.charge(token, amount, idempotency_key, email=email), timeout=timeout
        )
    except asyncio.TimeoutError:
        raise ServiceTimeoutError(gateway.provider_name, timeout) from None
