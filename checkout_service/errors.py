"""Error kinds raised by the reservation, checkout, payment and commit steps.

Every failure is classified where it is raised. Callers branch on ``kind``
(or on the exception class), never on the message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INSUFFICIENT = "insufficient"
    OUT_OF_STOCK = "out_of_stock"
    CONFLICT = "conflict"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_DECLINED = "payment_declined"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_UNAVAILABLE = "verification_unavailable"
    PARTIAL_COMMIT = "partial_commit"
    NOT_FOUND = "not_found"
    UNAUTHENTICATED = "unauthenticated"
    INVALID_REQUEST = "invalid_request"


class CheckoutError(Exception):
    kind: ErrorKind = ErrorKind.INVALID_REQUEST
    status_code: int = 400
    retryable: bool = False
    default_message = "Something went wrong. Please try again."

    def __init__(self, user_message: str | None = None, **details: Any):
        self.user_message = user_message or self.default_message
        self.details = details
        super().__init__(self.user_message)

    def to_detail(self) -> dict[str, Any]:
        return {"error": self.kind.value, "message": self.user_message, **self.details}


class InsufficientStock(CheckoutError):
    kind = ErrorKind.INSUFFICIENT
    status_code = 409
    retryable = True
    default_message = "Some items don't have enough stock. Please reduce the quantity."


class OutOfStock(CheckoutError):
    kind = ErrorKind.OUT_OF_STOCK
    status_code = 409
    retryable = True
    default_message = "Some items are out of stock. Please remove them from your cart."


class StockConflict(CheckoutError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    retryable = True
    default_message = "Stock was just updated. Please try again."


class PaymentCancelled(CheckoutError):
    kind = ErrorKind.PAYMENT_CANCELLED
    status_code = 400
    retryable = True
    default_message = "Payment was cancelled. You can try again."


class PaymentDeclined(CheckoutError):
    kind = ErrorKind.PAYMENT_DECLINED
    status_code = 402
    retryable = True
    default_message = "Your payment was declined. Please try again or use another method."


class VerificationFailed(CheckoutError):
    kind = ErrorKind.VERIFICATION_FAILED
    status_code = 402
    retryable = True
    default_message = (
        "Payment could not be verified. If you were charged, contact support with your reference."
    )


class VerificationUnavailable(CheckoutError):
    kind = ErrorKind.VERIFICATION_UNAVAILABLE
    status_code = 503
    retryable = True
    default_message = "We couldn't confirm your payment right now. Please try again shortly."


class PartialCommit(CheckoutError):
    kind = ErrorKind.PARTIAL_COMMIT
    status_code = 500
    default_message = (
        "Your order was received but could not be completed. Our team has been notified."
    )


class NotFound(CheckoutError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    default_message = "The requested item was not found."


class Unauthenticated(CheckoutError):
    kind = ErrorKind.UNAUTHENTICATED
    status_code = 401
    default_message = "Please sign in to continue."


class InvalidRequest(CheckoutError):
    kind = ErrorKind.INVALID_REQUEST
    status_code = 400
    default_message = "The request is invalid."


class EmptyCart(InvalidRequest):
    default_message = "Your cart is empty. Please add items first."

    def __init__(self, user_message: str | None = None, **details: Any):
        details.setdefault("redirect", "/cart")
        super().__init__(user_message, **details)
