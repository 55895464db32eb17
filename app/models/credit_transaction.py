from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field, model_validator


class TransactionType(str, Enum):
    PURCHASE = "PURCHASE"
    DEDUCTION = "DEDUCTION"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class ReferenceType(str, Enum):
    PURCHASE = "PURCHASE"
    RESOURCE = "RESOURCE"
    ADMIN = "ADMIN"


class CreditTransaction(Document):
    """Append-only ledger entry. Never updated once its unit of work commits."""
    user_id: PydanticObjectId
    type: TransactionType
    amount: int  # positive = credits in, negative = credits out
    balance_before: int
    balance_after: int
    reference_type: ReferenceType
    reference_id: str | None = None  # purchase id, resource id, admin ticket
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None  # admin actor for ADJUSTMENT / REFUND
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def _check_snapshot(self) -> "CreditTransaction":
        if self.balance_after != self.balance_before + self.amount:
            raise ValueError("balance_after must equal balance_before + amount")
        if self.balance_after < 0:
            raise ValueError("balance_after must not be negative")
        return self

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("user_id", 1), ("idempotency_key", 1)],
            [("reference_type", 1), ("reference_id", 1)],
        ]
