"""Mobile-money payment channel adapter: references and payer instructions.

Payments settle out of band. The payer quotes the transaction reference when
paying; the provider webhook or the SMS relay later echoes it to
POST /v1/payments/confirm, which resolves the purchase.
"""

import secrets
from typing import Any

from app.core.config import get_settings
from app.models.credit_purchase import CreditPurchase, PaymentMethod

_REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I: read over the phone
REFERENCE_LENGTH = 10


def new_transaction_reference() -> str:
    # references are stored upper-case; confirm_purchase normalises lookups the same way
    prefix = get_settings().payment_reference_prefix.strip().upper()
    body = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))
    return f"{prefix}{body}"


def payment_instructions(purchase: CreditPurchase) -> dict[str, Any]:
    """Human-readable instructions shown to the payer after initiation."""
    s = get_settings()
    amount = f"{purchase.amount_paid:,} {purchase.currency}"
    ref = purchase.transaction_reference
    if purchase.payment_method == PaymentMethod.MOBILE_MONEY:
        message = (
            f"Send {amount} by mobile money to {s.payment_merchant_number or 'the merchant number'} "
            f"({s.payment_merchant_name}) and enter {ref} as the reason/reference. "
            "Your credits are added as soon as the payment is confirmed."
        )
    elif purchase.payment_method == PaymentMethod.BANK_TRANSFER:
        message = (
            f"Transfer {amount} to {s.payment_merchant_name} quoting reference {ref}. "
            "Bank transfers can take up to one business day to confirm."
        )
    else:
        message = f"Pay {amount} by card using reference {ref}."
    return {
        "method": purchase.payment_method.value,
        "pay_to": s.payment_merchant_number or None,
        "merchant_name": s.payment_merchant_name,
        "amount": purchase.amount_paid,
        "currency": purchase.currency,
        "reference": ref,
        "contact": purchase.contact,
        "message": message,
    }
