from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field


class Listing(Document):
    """Paid resource: a classified listing published against a credit deduction."""
    user_id: PydanticObjectId
    title: str
    description: str = ""
    pricing_tier_id: PydanticObjectId
    credits_cost: int = 0
    credit_transaction_id: PydanticObjectId | None = None
    status: str = "active"  # active, expired, removed
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "listings"
        indexes = [[("user_id", 1), ("created_at", -1)]]
