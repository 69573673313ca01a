"""
Domain error taxonomy shared across order lifecycle services.

Every error carries a human readable message, a stable machine code and
free-form keyword context that ends up in structured logs and API error
bodies.
"""

from typing import Any, Optional


class OrderflowError(Exception):
    """Base exception for all order lifecycle errors."""

    default_code = "orderflow_error"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
        }


class ValidationError(OrderflowError):
    """Raised when input is malformed, before any state is touched."""

    default_code = "validation_error"


class OrderNotFoundError(OrderflowError):
    """Raised when an order does not exist."""

    default_code = "order_not_found"

    def __init__(self, order_id: Any, **context: Any):
        super().__init__(f"Order not found: {order_id}", order_id=str(order_id), **context)
        self.order_id = order_id


class TransientInfraError(OrderflowError):
    """Raised on storage or delivery I/O failure; the caller may retry."""

    default_code = "transient_infrastructure_error"
    retryable = True


class LockAcquisitionError(TransientInfraError):
    """Raised when an order lock cannot be acquired in time."""

    default_code = "lock_timeout"


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)
