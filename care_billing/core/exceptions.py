"""
Custom Exception Hierarchy

Typed failures for the billing core. Balance and lifecycle invariant
violations are always raised as one of these, never coerced.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    FORBIDDEN = "ERR_1005"
    CONCURRENCY_CONFLICT = "ERR_1007"

    # Wallet / ledger errors (4xxx)
    WALLET_NOT_FOUND = "ERR_4001"
    INSUFFICIENT_PENDING_FUNDS = "ERR_4002"
    INSUFFICIENT_WITHDRAWABLE_FUNDS = "ERR_4003"
    INVALID_AMOUNT = "ERR_4004"
    FUNDS_ON_HOLD = "ERR_4005"
    CURRENCY_MISMATCH = "ERR_4006"
    ORDER_REFUNDED = "ERR_4007"

    # Gateway errors (5xxx)
    GATEWAY_FAILURE = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # Subscription state machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    SUBSCRIPTION_NOT_FOUND = "ERR_6002"
    CHARGE_IN_PROGRESS = "ERR_6003"
    BILLING_RECORD_NOT_FOUND = "ERR_6004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class SubscriptionNotFoundError(NotFoundException):
    def __init__(self, subscription_id: str):
        super().__init__("Subscription", subscription_id, ErrorCode.SUBSCRIPTION_NOT_FOUND)


class BillingRecordNotFoundError(NotFoundException):
    def __init__(self, identifier: str):
        super().__init__("BillingRecord", identifier, ErrorCode.BILLING_RECORD_NOT_FOUND)


class ForbiddenError(AppException):
    """Raised when the caller's identity does not own the resource"""

    def __init__(self, user_id: str, action: str, resource_id: str):
        super().__init__(
            message=f"User {user_id} is not allowed to {action} {resource_id}",
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details={"user_id": user_id, "action": action, "resource_id": resource_id}
        )


class ConcurrencyConflictError(AppException):
    """Raised when per-entity serialization lost the race after all retries"""

    def __init__(self, entity: str, entity_id: str, attempts: int | None = None):
        details: dict[str, Any] = {"entity": entity, "entity_id": entity_id}
        if attempts is not None:
            details["attempts"] = attempts
        super().__init__(
            message=f"Concurrent modification of {entity} {entity_id}",
            error_code=ErrorCode.CONCURRENCY_CONFLICT,
            status_code=409,
            details=details
        )


class WalletException(AppException):
    """Base exception for wallet-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        caregiver_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if caregiver_id:
            self.details["caregiver_id"] = caregiver_id


class InsufficientPendingFundsError(WalletException):
    """Raised when a release exceeds the pending balance"""

    def __init__(self, caregiver_id: str, pending_balance: Any, requested: Any):
        super().__init__(
            message=f"Insufficient pending funds for caregiver {caregiver_id}",
            error_code=ErrorCode.INSUFFICIENT_PENDING_FUNDS,
            caregiver_id=caregiver_id,
            details={
                "pending_balance": str(pending_balance),
                "requested_amount": str(requested),
            }
        )


class InsufficientWithdrawableFundsError(WalletException):
    """Raised when a debit would drive the withdrawable balance below zero"""

    def __init__(self, caregiver_id: str, withdrawable_balance: Any, requested: Any):
        super().__init__(
            message=f"Insufficient withdrawable funds for caregiver {caregiver_id}",
            error_code=ErrorCode.INSUFFICIENT_WITHDRAWABLE_FUNDS,
            caregiver_id=caregiver_id,
            details={
                "withdrawable_balance": str(withdrawable_balance),
                "requested_amount": str(requested),
            }
        )


class FundsOnHoldError(WalletException):
    """Raised when funds of a disputed order are released"""

    def __init__(self, caregiver_id: str, order_id: str):
        super().__init__(
            message=f"Funds for order {order_id} are on dispute hold",
            error_code=ErrorCode.FUNDS_ON_HOLD,
            caregiver_id=caregiver_id,
            details={"order_id": order_id}
        )


class OrderRefundedError(WalletException):
    """Raised when a fully refunded order is released"""

    def __init__(self, caregiver_id: str, order_id: str):
        super().__init__(
            message=f"Order {order_id} was refunded, nothing is left to release",
            error_code=ErrorCode.ORDER_REFUNDED,
            caregiver_id=caregiver_id,
            details={"order_id": order_id}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class GatewayFailureError(ExternalServiceException):
    """Raised when the payment gateway rejects or cannot complete a call"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="payment_gateway",
            message=f"Payment gateway error: {message}",
            error_code=ErrorCode.GATEWAY_FAILURE,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "GatewayFailureError":
        """Build a GatewayFailureError from an HTTP response (e.g. httpx.Response)"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class StateMachineException(AppException):
    """Base exception for subscription lifecycle errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when state transition is not allowed"""

    def __init__(
        self,
        current_state: str,
        target_state: str,
        subscription_id: str | None = None,
        reason: str | None = None,
    ):
        message = f"Invalid transition from '{current_state}' to '{target_state}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "subscription_id": subscription_id,
            }
        )


class ChargeInProgressError(StateMachineException):
    """Raised when a subscription is mutated while a charge attempt is outstanding"""

    def __init__(self, subscription_id: str):
        super().__init__(
            message=f"Subscription {subscription_id} has a charge attempt in progress",
            error_code=ErrorCode.CHARGE_IN_PROGRESS,
            details={"subscription_id": subscription_id}
        )
