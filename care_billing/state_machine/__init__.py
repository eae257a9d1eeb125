"""
Subscription Lifecycle State Machine
"""
from care_billing.state_machine.subscription_states import (
    SubscriptionAction,
    SUBSCRIPTION_TRANSITIONS,
    apply_transition,
    is_valid_transition,
)

__all__ = ["SubscriptionAction", "SUBSCRIPTION_TRANSITIONS", "apply_transition", "is_valid_transition"]
