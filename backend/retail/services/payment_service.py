# Overview: Service-layer operations for payments; card authorization through an external oracle.

"""
Payment authorization

The gateway itself is out of process. The app is configured with
PAYMENT_AUTHORIZER, a callable (reference, amount_cents) -> bool | str that
reports whether the provider confirmed the payment ("succeeded"/True) or not.

- cash / mobile: settled at the counter or by the courier, nothing to confirm
- card: must carry the provider reference and be confirmed before the order
  is created
"""

from __future__ import annotations

from typing import Callable, Optional

from ..errors import RetailError, ValidationError
from ..validation import PaymentInfo

PaymentAuthorizer = Callable[[str, int], object]

AUTHORIZED_RESULTS = (True, "succeeded")


class PaymentError(RetailError):
    """Raised when the payment provider declines or is unavailable."""

    status_code = 402


def requires_authorization(payment: PaymentInfo) -> bool:
    return payment.method == "card"


def authorize_payment(payment: PaymentInfo, amount_cents: int, authorizer: Optional[PaymentAuthorizer]) -> None:
    if not requires_authorization(payment):
        return
    if not payment.reference:
        raise ValidationError("payment.reference is required for card payments")
    if authorizer is None:
        raise PaymentError("Card payments are not available")

    result = authorizer(payment.reference, amount_cents)
    if result not in AUTHORIZED_RESULTS:
        raise PaymentError("Payment was not authorized", details={"reference": payment.reference})
