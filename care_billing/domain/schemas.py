"""
Typed boundary models.

Loosely typed input (webhook JSON, caller dicts) is translated into these
models before it reaches a service.
"""
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from care_billing.core.exceptions import AppException
from care_billing.db.models.subscription import BillingCycle


def _reject_float(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError("monetary amounts must be given as Decimal, int or str, not float")
    return value


class ActorRole(str, enum.Enum):
    CLIENT = "client"
    CAREGIVER = "caregiver"
    ADMIN = "admin"
    SYSTEM = "system"


class Actor(BaseModel):
    """Caller identity as passed in by the identity collaborator"""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: ActorRole = ActorRole.CLIENT

    @property
    def is_privileged(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system", role=ActorRole.SYSTEM)


class InitialPayment(BaseModel):
    """Verified first payment that activates a subscription"""

    transaction_id: str
    amount_paid: Decimal
    payment_token: Optional[str] = None
    card_last_four: Optional[str] = Field(default=None, max_length=4)
    card_brand: Optional[str] = None
    card_expiry: Optional[str] = None

    amount_not_float = field_validator("amount_paid", mode="before")(_reject_float)


class CreateSubscriptionRequest(BaseModel):
    client_id: str
    caregiver_id: str
    gig_id: str
    order_id: str
    billing_cycle: BillingCycle
    frequency_per_week: int = Field(ge=1, le=7)
    price_per_visit: Decimal = Field(gt=0)
    currency: Optional[str] = None
    email: Optional[str] = None
    contract_id: Optional[str] = None

    price_not_float = field_validator("price_per_visit", mode="before")(_reject_float)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else v


class ChangePlanRequest(BaseModel):
    new_billing_cycle: Optional[BillingCycle] = None
    new_frequency_per_week: Optional[int] = Field(default=None, ge=1, le=7)
    new_price_per_visit: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)

    price_not_float = field_validator("new_price_per_visit", mode="before")(_reject_float)

    @model_validator(mode="after")
    def at_least_one_change(self) -> "ChangePlanRequest":
        if (
            self.new_billing_cycle is None
            and self.new_frequency_per_week is None
            and self.new_price_per_visit is None
        ):
            raise ValueError("a plan change must set a cycle, frequency or price")
        return self


class OneTimeOrderRequest(BaseModel):
    order_id: str
    client_id: str
    caregiver_id: str
    gig_id: Optional[str] = None
    order_fee: Decimal = Field(gt=0)
    service_charge: Decimal = Decimal("0")
    gateway_fees: Decimal = Decimal("0")
    amount_paid: Decimal = Field(gt=0)
    payment_transaction_id: Optional[str] = None
    currency: Optional[str] = None

    amounts_not_float = field_validator(
        "order_fee", "service_charge", "gateway_fees", "amount_paid", mode="before"
    )(_reject_float)


class GatewayWebhookCard(BaseModel):
    token: Optional[str] = None
    last_4digits: Optional[str] = None
    type: Optional[str] = None
    expiry: Optional[str] = None


class GatewayWebhookData(BaseModel):
    id: int | str
    tx_ref: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    processor_response: Optional[str] = None
    card: Optional[GatewayWebhookCard] = None

    @property
    def is_successful(self) -> bool:
        return self.status.lower() in ("successful", "succeeded")


class GatewayWebhookPayload(BaseModel):
    """charge.completed callback from the payment gateway"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event: str = Field(default="charge.completed")
    data: GatewayWebhookData


class OperationResult(BaseModel):
    """Outcome of a client-initiated operation: applied, or rejected with a reason"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    applied: bool
    reason: Optional[str] = None
    error_code: Optional[str] = None
    subscription: Any = None
    refund_amount: Optional[Decimal] = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, subscription: Any = None, **kwargs: Any) -> "OperationResult":
        return cls(applied=True, subscription=subscription, **kwargs)

    @classmethod
    def rejected(cls, error: AppException, subscription: Any = None) -> "OperationResult":
        return cls(
            applied=False,
            reason=error.message,
            error_code=error.error_code.value,
            subscription=subscription,
            details=error.details,
        )


class WalletSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    caregiver_id: str
    currency: str
    pending_balance: Decimal
    withdrawable_balance: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal


class ReconciliationReport(BaseModel):
    caregiver_id: str
    stored: dict[str, Decimal]
    from_ledger: dict[str, Decimal]
    corrected: bool = False

    @property
    def drift(self) -> dict[str, Decimal]:
        return {
            name: self.stored[name] - self.from_ledger[name]
            for name in self.stored
            if self.stored[name] != self.from_ledger[name]
        }

    @property
    def in_sync(self) -> bool:
        return not self.drift


class ClientSubscriptionSummary(BaseModel):
    client_id: str
    active_count: int
    total_monthly_spend: Decimal
    next_payment_date: Optional[datetime] = None
    currency: str


class SubscriptionAnalytics(BaseModel):
    active: int
    paused: int
    pending_cancellation: int
    cancelled: int
    terminated: int
    monthly_recurring_revenue: Decimal
    churn_rate: Decimal  # percent of ever-activated subscriptions that ended
