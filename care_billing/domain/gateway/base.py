"""
Payment Gateway interface.

The billing core only depends on this contract; the concrete provider owns
HTTP, authentication and response parsing.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from care_billing.core.money import Money


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of one charge call"""

    success: bool
    gateway_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def succeeded(cls, gateway_transaction_id: str) -> "ChargeResult":
        return cls(success=True, gateway_transaction_id=gateway_transaction_id)

    @classmethod
    def failed(cls, failure_reason: str) -> "ChargeResult":
        return cls(success=False, failure_reason=failure_reason)


@dataclass(frozen=True)
class TokenCaptureResult:
    """Hosted page the client visits to authorize a new card"""

    reference: str
    authorization_url: str


class PaymentGateway(ABC):
    """
    Uniform interface for charging saved payment tokens.

    A declined charge is a ChargeResult with success=False. Transport
    problems raise GatewayFailureError / ServiceTimeoutError; the outcome of
    such a call is unknown and must be reconciled through verify_charge or a
    webhook.
    """

    @abstractmethod
    async def charge(
        self,
        token: str,
        amount: Money,
        idempotency_key: str,
        *,
        email: Optional[str] = None,
    ) -> ChargeResult:
        """Charge a saved token. Repeating a key must never charge twice."""

    @abstractmethod
    async def verify_charge(self, idempotency_key: str) -> Optional[ChargeResult]:
        """Look up an earlier charge by key. None when the gateway has no record."""

    @abstractmethod
    async def initiate_token_capture(
        self,
        reference: str,
        amount: Money,
        *,
        email: Optional[str] = None,
    ) -> TokenCaptureResult:
        """Start a small verification payment that yields a new reusable token"""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider name for logs"""
