"""
Subscription Lifecycle - States and Legal Transitions
"""
from enum import Enum

from care_billing.core.exceptions import InvalidStateTransitionError
from care_billing.db.models.subscription import Subscription, SubscriptionStatus


class SubscriptionAction(str, Enum):
    """Named lifecycle operations"""

    ACTIVATE = "activate"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    CHARGE_FAILURES_EXHAUSTED = "charge_failures_exhausted"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"
    FINALIZE_CANCELLATION = "finalize_cancellation"
    TERMINATE = "terminate"
    PAUSE = "pause"
    RESUME = "resume"
    CHANGE_PLAN = "change_plan"
    REQUEST_PAYMENT_METHOD_UPDATE = "request_payment_method_update"
    COMPLETE_PAYMENT_METHOD_UPDATE = "complete_payment_method_update"
    ABORT_PAYMENT_METHOD_UPDATE = "abort_payment_method_update"
    LINK_CONTRACT = "link_contract"


TERMINAL_STATES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.TERMINATED})

NON_TERMINAL_STATES = frozenset(s for s in SubscriptionStatus if s not in TERMINAL_STATES)

# State transitions mapping
SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.PENDING_ACTIVATION: [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TERMINATED,
    ],
    SubscriptionStatus.ACTIVE: [
        SubscriptionStatus.ACTIVE,  # recurring charge, plan change
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.PENDING_CANCELLATION,
        SubscriptionStatus.PAYMENT_METHOD_UPDATE_PENDING,
        SubscriptionStatus.TERMINATED,
    ],
    SubscriptionStatus.PAUSED: [
        SubscriptionStatus.PAUSED,  # plan change while paused
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TERMINATED,
    ],
    SubscriptionStatus.PENDING_CANCELLATION: [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.TERMINATED,
    ],
    SubscriptionStatus.PAYMENT_METHOD_UPDATE_PENDING: [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TERMINATED,
    ],
    SubscriptionStatus.CANCELLED: [],
    SubscriptionStatus.TERMINATED: [],
}

# action -> (states it may start from, resulting state or None to keep the current one)
ACTION_RULES: dict[SubscriptionAction, tuple[frozenset, SubscriptionStatus | None]] = {
    SubscriptionAction.ACTIVATE: (
        frozenset({SubscriptionStatus.PENDING_ACTIVATION}), SubscriptionStatus.ACTIVE
    ),
    SubscriptionAction.CHARGE_SUCCEEDED: (
        frozenset({SubscriptionStatus.ACTIVE}), SubscriptionStatus.ACTIVE
    ),
    SubscriptionAction.CHARGE_FAILED: (
        frozenset({SubscriptionStatus.ACTIVE}), SubscriptionStatus.ACTIVE
    ),
    SubscriptionAction.CHARGE_FAILURES_EXHAUSTED: (
        frozenset({SubscriptionStatus.ACTIVE}), SubscriptionStatus.TERMINATED
    ),
    SubscriptionAction.CANCEL: (
        frozenset({SubscriptionStatus.ACTIVE}), SubscriptionStatus.PENDING_CANCELLATION
    ),
    SubscriptionAction.REACTIVATE: (
        frozenset({SubscriptionStatus.PENDING_CANCELLATION}), SubscriptionStatus.ACTIVE
    ),
    SubscriptionAction.FINALIZE_CANCELLATION: (
        frozenset({SubscriptionStatus.PENDING_CANCELLATION}), SubscriptionStatus.CANCELLED
    ),
    SubscriptionAction.TERMINATE: (NON_TERMINAL_STATES, SubscriptionStatus.TERMINATED),
    SubscriptionAction.PAUSE: (
        frozenset({SubscriptionStatus.ACTIVE}), SubscriptionStatus.PAUSED
    ),
    SubscriptionAction.RESUME: (
        frozenset({SubscriptionStatus.PAUSED}), SubscriptionStatus.ACTIVE
    ),
    SubscriptionAction.CHANGE_PLAN: (
        frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED}), None
    ),
    SubscriptionAction.REQUEST_PAYMENT_METHOD_UPDATE: (
        frozenset({SubscriptionStatus.ACTIVE}), SubscriptionStatus.PAYMENT_METHOD_UPDATE_PENDING
    ),
    SubscriptionAction.COMPLETE_PAYMENT_METHOD_UPDATE: (
        frozenset({SubscriptionStatus.PAYMENT_METHOD_UPDATE_PENDING}), SubscriptionStatus.ACTIVE
    ),
    SubscriptionAction.ABORT_PAYMENT_METHOD_UPDATE: (
        frozenset({SubscriptionStatus.PAYMENT_METHOD_UPDATE_PENDING}), SubscriptionStatus.ACTIVE
    ),
    SubscriptionAction.LINK_CONTRACT: (NON_TERMINAL_STATES, None),
}


def is_valid_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in SUBSCRIPTION_TRANSITIONS.get(current, [])


def target_state(action: SubscriptionAction, current: SubscriptionStatus) -> SubscriptionStatus:
    """Resulting state of action from current, or InvalidStateTransitionError"""
    allowed_from, target = ACTION_RULES[action]
    resulting = target or current
    # actions that keep the state (plan change, contract link) only need a legal starting state
    if current not in allowed_from or (target is not None and not is_valid_transition(current, target)):
        raise InvalidStateTransitionError(
            current_state=current.value,
            target_state=resulting.value,
            reason=f"'{action.value}' is not allowed",
        )
    return resulting


def apply_transition(subscription: Subscription, action: SubscriptionAction) -> SubscriptionStatus:
    """
    Validate and apply action's state change on subscription.

    Raises before touching anything, so an illegal action leaves the
    subscription exactly as it was.
    """
    current = SubscriptionStatus(subscription.status)
    try:
        resulting = target_state(action, current)
    except InvalidStateTransitionError as e:
        e.details["subscription_id"] = subscription.id
        raise
    subscription.status = resulting
    return resulting


def is_terminal(status: SubscriptionStatus) -> bool:
    return status in TERMINAL_STATES
