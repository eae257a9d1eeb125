"""
Outbox Event Model - Transactional Outbox for Domain Events
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from care_billing.db.database import Base


class DomainEventType(str, enum.Enum):
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_TERMINATED = "subscription_terminated"
    CANCELLATION_REQUESTED = "cancellation_requested"
    CANCELLATION_FINALIZED = "cancellation_finalized"
    PLAN_CHANGED = "plan_changed"
    FUNDS_RELEASED = "funds_released"


class EventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxEvent(Base):
    """Domain event waiting for delivery to the notification webhook"""

    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    event_type = Column(SQLEnum(DomainEventType), nullable=False)
    aggregate_id = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)

    status = Column(SQLEnum(EventStatus), default=EventStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=5)

    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
