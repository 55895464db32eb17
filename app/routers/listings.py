from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.core.exceptions import PaymentRequiredError
from app.deps import get_current_user, idempotency_key, parse_object_id
from app.models.user import User
from app.services import listings as listings_service
from app.services.credits import transaction_to_dict
from app.services.deductions import InsufficientCredits

router = APIRouter()


class ListingCreate(BaseModel):
    pricing_tier_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)


@router.post("", status_code=201)
async def listing_create(
    body: ListingCreate,
    user: User = Depends(get_current_user),
    key: str | None = Depends(idempotency_key),
):
    """Publish a listing paid with credits. Send an Idempotency-Key to retry safely after a timeout."""
    result = await listings_service.create_listing(
        user.id,
        parse_object_id(body.pricing_tier_id, "Pricing tier"),
        body.title,
        body.description,
        idempotency_key=key,
    )
    if isinstance(result, InsufficientCredits):
        raise PaymentRequiredError(result.required, result.available)
    return {
        "resource_id": result.resource_id,
        "transaction_id": str(result.transaction_id) if result.transaction_id else None,
        "remaining_balance": result.remaining_balance,
        "credits_spent": result.credits_spent,
        "replayed": result.replayed,
    }


@router.get("/{listing_id}/transactions")
async def listing_transactions(listing_id: str, user: User = Depends(get_current_user)):
    """Credits spent on (and refunded for) one of the caller's listings."""
    items = await listings_service.get_listing_transactions(parse_object_id(listing_id, "Listing"), user.id)
    return {"items": [transaction_to_dict(t) for t in items]}
