"""Pricing catalog lookups (tiers are managed by the catalog service)."""

from beanie import PydanticObjectId

from app.core.exceptions import BadRequestError, NotFoundError
from app.models.pricing_tier import PricingTier, TierKind


async def get_pricing_tier(tier_id: PydanticObjectId) -> PricingTier:
    tier = await PricingTier.get(tier_id)
    if not tier:
        raise NotFoundError("Pricing tier not found")
    return tier


async def get_active_tier(tier_id: PydanticObjectId, kind: TierKind) -> PricingTier:
    """Tier usable for a new purchase or listing: exists, active, right kind."""
    tier = await get_pricing_tier(tier_id)
    if not tier.is_active:
        raise BadRequestError("Pricing tier is not active", details={"pricing_tier_id": str(tier_id)})
    if tier.kind != kind:
        raise BadRequestError(
            f"Pricing tier is not a {kind.value} tier",
            details={"pricing_tier_id": str(tier_id), "kind": tier.kind.value},
        )
    return tier


async def list_active_tiers(kind: TierKind | None = None) -> list[PricingTier]:
    """Active tiers, cheapest first."""
    query = [PricingTier.is_active == True]  # noqa: E712
    if kind is not None:
        query.append(PricingTier.kind == kind)
    return await PricingTier.find(*query).sort("price").to_list()


def tier_to_dict(t: PricingTier) -> dict:
    return {
        "id": str(t.id),
        "name": t.name,
        "kind": t.kind.value,
        "credit_amount": t.credit_amount,
        "bonus_credits": t.bonus_credits,
        "total_credits": t.total_credits,
        "credits_cost": t.credits_cost,
        "visibility_days": t.visibility_days,
        "price": t.price,
        "currency": t.currency,
        "description": t.description,
    }
