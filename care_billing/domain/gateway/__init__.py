"""
Payment Gateway Abstraction
"""
from care_billing.domain.gateway.base import ChargeResult, PaymentGateway, TokenCaptureResult
from care_billing.domain.gateway.factory import get_payment_gateway, set_payment_gateway

__all__ = [
    "ChargeResult",
    "PaymentGateway",
    "TokenCaptureResult",
    "get_payment_gateway",
    "set_payment_gateway",
]
