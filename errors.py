"""
Error taxonomy for the storefront services.

Services raise these; the HTTP layer maps them onto status codes and the
``{success, error, timestamp}`` envelope. Nothing here knows about FastAPI.
"""
from typing import Any, Optional


class StoreError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"message": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class NotFound(StoreError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidArgument(StoreError):
    status_code = 400
    code = "INVALID_ARGUMENT"


class InsufficientStock(StoreError):
    status_code = 400
    code = "INSUFFICIENT_STOCK"


class CartEmpty(StoreError):
    status_code = 400
    code = "CART_EMPTY"

    def __init__(self, message: str = "Cart is empty", details: Optional[Any] = None):
        super().__init__(message, details)


class CartValidationFailed(StoreError):
    status_code = 400
    code = "CART_VALIDATION_FAILED"


class InvalidStatusTransition(StoreError):
    status_code = 400
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Invalid status transition from {current} to {requested}",
            {"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class Unauthorized(StoreError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(StoreError):
    status_code = 403
    code = "FORBIDDEN"


class Conflict(StoreError):
    status_code = 409
    code = "CONFLICT"


class TransactionAborted(StoreError):
    """The atomic unit failed and was rolled back. Details stay in the logs."""

    status_code = 500
    code = "TRANSACTION_ABORTED"

    def __init__(self, message: str = "The operation could not be completed, please try again"):
        super().__init__(message)
