"""
Tests for NotificationPublisher - domain event delivery over HTTP
"""
import json
from datetime import datetime

import httpx
import pytest

from care_billing.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from care_billing.core.exceptions import CircuitBreakerOpenError
from care_billing.db.models.outbox_event import DomainEventType, OutboxEvent
from care_billing.domain.services.notification_service import (
    NotificationDeliveryError,
    NotificationPublisher,
)

URL = "https://notify.test/events"


def _event() -> OutboxEvent:
    return OutboxEvent(
        id=7,
        event_type=DomainEventType.SUBSCRIPTION_ACTIVATED,
        aggregate_id="sub-1",
        payload={"client_id": "client-1", "amount": "44616.00"},
        created_at=datetime(2024, 1, 1, 9, 0, 0),
    )


def _publisher(handler, threshold: int = 10, url: str = URL) -> NotificationPublisher:
    return NotificationPublisher(
        CircuitBreaker("notification-test", CircuitBreakerConfig(failure_threshold=threshold)),
        webhook_url=url,
        transport=httpx.MockTransport(handler),
    )


class TestPublish:

    @pytest.mark.unit
    async def test_event_body(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        await _publisher(handler).publish(_event())

        assert len(seen) == 1
        assert str(seen[0].url) == URL
        assert json.loads(seen[0].content) == {
            "event_id": 7,
            "event_type": "subscription_activated",
            "aggregate_id": "sub-1",
            "occurred_at": "2024-01-01T09:00:00",
            "payload": {"client_id": "client-1", "amount": "44616.00"},
        }

    @pytest.mark.unit
    async def test_no_url_only_logs(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        await _publisher(handler, url="").publish(_event())

        assert seen == []

    @pytest.mark.unit
    async def test_error_status_raises(self):
        with pytest.raises(NotificationDeliveryError) as exc_info:
            await _publisher(lambda r: httpx.Response(500)).publish(_event())

        assert exc_info.value.details["status_code"] == 500

    @pytest.mark.unit
    async def test_redirect_is_not_delivery(self):
        with pytest.raises(NotificationDeliveryError):
            await _publisher(lambda r: httpx.Response(302)).publish(_event())

    @pytest.mark.unit
    async def test_unreachable_webhook_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(NotificationDeliveryError) as exc_info:
            await _publisher(handler).publish(_event())

        assert "unreachable" in exc_info.value.message

    @pytest.mark.unit
    async def test_breaker_opens_after_repeated_failures(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        publisher = _publisher(handler, threshold=2)
        for _ in range(2):
            with pytest.raises(NotificationDeliveryError):
                await publisher.publish(_event())

        with pytest.raises(CircuitBreakerOpenError):
            await publisher.publish(_event())
        assert len(calls) == 2
