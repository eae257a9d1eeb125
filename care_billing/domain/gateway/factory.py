"""
Gateway Factory - process-wide payment gateway instance.
"""
from __future__ import annotations

import threading

from care_billing.core.circuit_breaker import get_payment_gateway_circuit_breaker
from care_billing.core.logging import get_logger
from care_billing.domain.gateway.base import PaymentGateway

logger = get_logger(__name__)

_gateway: PaymentGateway | None = None
_lock = threading.Lock()


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        with _lock:
            if _gateway is None:
                from care_billing.domain.gateway.flutterwave import FlutterwaveGateway

                _gateway = FlutterwaveGateway(circuit_breaker=get_payment_gateway_circuit_breaker())
                logger.info(
                    "Payment gateway initialized",
                    extra_data={"provider": _gateway.provider_name},
                )
    return _gateway


def set_payment_gateway(gateway: PaymentGateway | None) -> None:
    """Replace the gateway (tests, alternative providers)"""
    global _gateway
    with _lock:
        _gateway = gateway
