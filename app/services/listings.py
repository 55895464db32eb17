"""Listing creation paid with credits (the ledger's resource-factory collaborator)."""

from beanie import PydanticObjectId

from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.models.credit_transaction import CreditTransaction
from app.models.listing import Listing
from app.services.deductions import (
    CreditSpend,
    DeductionResult,
    ResourceFactory,
    create_paid_resource,
    list_resource_transactions,
)

log = get_logger(__name__)


class ListingFactory(ResourceFactory):
    def __init__(self, title: str, description: str = ""):
        self.title = title
        self.description = description

    async def create(self, spend: CreditSpend) -> str:
        listing = Listing(
            user_id=spend.user_id,
            title=self.title,
            description=self.description,
            pricing_tier_id=spend.pricing_tier_id,
            credits_cost=spend.credits,
        )
        await listing.insert()
        return str(listing.id)

    async def link(self, resource_id: str, transaction_id: PydanticObjectId) -> None:
        listing = await Listing.get(PydanticObjectId(resource_id))
        listing.credit_transaction_id = transaction_id
        await listing.save()

    async def discard(self, resource_id: str) -> None:
        listing = await Listing.get(PydanticObjectId(resource_id))
        if listing:
            await listing.delete()
            log.info("listing_discarded", listing_id=resource_id)


async def create_listing(
    user_id: PydanticObjectId,
    pricing_tier_id: PydanticObjectId,
    title: str,
    description: str = "",
    idempotency_key: str | None = None,
) -> DeductionResult:
    return await create_paid_resource(
        user_id,
        pricing_tier_id,
        ListingFactory(title, description),
        idempotency_key=idempotency_key,
    )


async def get_listing_transactions(listing_id: PydanticObjectId, user_id: PydanticObjectId) -> list[CreditTransaction]:
    """Credit charges and refunds for a listing. Other users' listings read as missing."""
    listing = await Listing.get(listing_id)
    if not listing or listing.user_id != user_id:
        raise NotFoundError("Listing not found")
    return await list_resource_transactions(str(listing.id))
