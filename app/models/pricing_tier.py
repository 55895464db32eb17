from datetime import datetime
from enum import Enum

from beanie import Document
from pydantic import Field


class TierKind(str, Enum):
    CREDIT_PACKAGE = "credit_package"  # bought with money, yields credits
    LISTING = "listing"  # spent in credits to publish a listing


class PricingTier(Document):
    """Pricing catalog entry, managed outside the ledger."""
    name: str
    kind: TierKind = TierKind.CREDIT_PACKAGE
    credit_amount: int = Field(default=0, ge=0)
    bonus_credits: int = Field(default=0, ge=0)
    credits_cost: int = Field(default=0, ge=0)
    visibility_days: int | None = None
    price: int = Field(default=0, ge=0)
    currency: str = "UGX"
    is_active: bool = True
    description: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total_credits(self) -> int:
        return self.credit_amount + self.bonus_credits

    class Settings:
        name = "pricing_tiers"
        indexes = [[("kind", 1), ("is_active", 1), ("price", 1)]]
