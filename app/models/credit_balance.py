from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class CreditBalance(Document):
    """Per-user credit state. Changed only by ledger appends made under the user's lease."""
    user_id: Indexed(PydanticObjectId, unique=True)
    balance: int = Field(default=0, ge=0)
    total_credits_earned: int = Field(default=0, ge=0)  # lifetime sum of completed purchases
    last_credit_purchase_at: datetime | None = None
    # Lease held by the critical section currently mutating this user
    lock_owner: str | None = None
    lock_expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_balances"
