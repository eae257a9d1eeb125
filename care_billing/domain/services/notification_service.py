"""
Notification Publisher - delivers domain events to the notification webhook

The billing core never formats or sends messages itself; it hands each event
to the consumer at NOTIFICATION_WEBHOOK_URL.
"""
from __future__ import annotations

import httpx

from care_billing.core.circuit_breaker import CircuitBreaker, get_notification_circuit_breaker
from care_billing.core.config import settings
from care_billing.core.exceptions import ExternalServiceException
from care_billing.core.logging import get_logger
from care_billing.db.models.outbox_event import OutboxEvent

logger = get_logger(__name__)


class NotificationDeliveryError(ExternalServiceException):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(
            service_name="notification_webhook",
            message=message,
            details={"status_code": status_code} if status_code else None,
        )


class NotificationPublisher:
    """POSTs one event per request; 2xx means delivered"""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker | None = None,
        *,
        webhook_url: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker or get_notification_circuit_breaker()
        self._webhook_url = webhook_url if webhook_url is not None else settings.NOTIFICATION_WEBHOOK_URL
        self._timeout = timeout_seconds
        self._transport = transport

    def _body(self, event: OutboxEvent) -> dict:
        return {
            "event_id": event.id,
            "event_type": event.event_type.value,
            "aggregate_id": event.aggregate_id,
            "occurred_at": event.created_at.isoformat() if event.created_at else None,
            "payload": event.payload,
        }

    async def publish(self, event: OutboxEvent) -> None:
        """Raises on any delivery failure so the outbox can schedule a retry"""
        if not self._webhook_url:
            logger.info(
                "No notification webhook configured, event logged only",
                extra_data={"event_id": event.id, "event_type": event.event_type.value}
            )
            return

        body = self._body(event)

        async def _send() -> None:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                try:
                    response = await client.post(self._webhook_url, json=body)
                except httpx.RequestError as exc:
                    raise NotificationDeliveryError(f"notification webhook unreachable: {exc}") from exc
            if response.status_code >= 300:
                raise NotificationDeliveryError(
                    f"notification webhook returned status {response.status_code}",
                    status_code=response.status_code,
                )

        await self._circuit_breaker.execute(_send)
