from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field
from pymongo import IndexModel


class PurchaseStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = (PurchaseStatus.COMPLETED, PurchaseStatus.FAILED, PurchaseStatus.CANCELLED)


class PaymentMethod(str, Enum):
    MOBILE_MONEY = "MobileMoney"
    CARD = "Card"
    BANK_TRANSFER = "BankTransfer"


class CreditPurchase(Document):
    """One attempt to buy a credit package; transaction_reference is the channel's idempotency key."""
    user_id: PydanticObjectId
    pricing_tier_id: PydanticObjectId
    credits_amount: int  # base + bonus at initiation time
    amount_paid: int
    currency: str
    payment_method: PaymentMethod
    contact: str | None = None  # payer phone number / e-mail
    transaction_reference: Indexed(str, unique=True)
    status: PurchaseStatus = PurchaseStatus.PENDING
    idempotency_key: str | None = None  # client token for retry-safe initiation
    credit_transaction_id: PydanticObjectId | None = None
    provider_metadata: dict[str, Any] = Field(default_factory=dict)
    failure_reason: str | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    class Settings:
        name = "credit_purchases"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            # one purchase per (user, Idempotency-Key); keyless purchases are not indexed
            IndexModel(
                [("user_id", 1), ("idempotency_key", 1)],
                name="user_idempotency_key_unique",
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
            [("status", 1), ("created_at", 1)],
        ]
