from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.pagination import page_to_offset
from app.deps import get_current_user, idempotency_key, parse_object_id
from app.models.credit_purchase import PaymentMethod
from app.models.pricing_tier import TierKind
from app.models.user import User
from app.services import credits as credits_service
from app.services import pricing as pricing_service
from app.services import purchases as purchases_service

router = APIRouter()


class InitiatePurchaseRequest(BaseModel):
    pricing_tier_id: str
    payment_method: PaymentMethod = PaymentMethod.MOBILE_MONEY
    contact: str | None = Field(default=None, max_length=64)  # mobile money number


@router.get("/balance")
async def credits_balance(user: User = Depends(get_current_user)):
    """Return current credit balance."""
    state = await credits_service.get_credit_state(user.id)
    return {
        "balance": state.balance if state else 0,
        "total_credits_earned": state.total_credits_earned if state else 0,
        "last_purchase_at": state.last_credit_purchase_at.isoformat() if state and state.last_credit_purchase_at else None,
    }


@router.get("/transactions")
async def credits_transactions(
    user: User = Depends(get_current_user),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
):
    """Ledger entries for current user (newest first)."""
    limit, offset = page_to_offset(page, limit)
    items, total = await credits_service.list_transactions(user.id, limit=limit, offset=offset)
    return {
        "items": [credits_service.transaction_to_dict(t) for t in items],
        "page": page,
        "limit": limit,
        "offset": offset,
        "total": total,
    }


@router.get("/pricing-tiers")
async def credits_pricing_tiers():
    """Active credit packages, cheapest first."""
    tiers = await pricing_service.list_active_tiers(TierKind.CREDIT_PACKAGE)
    return {"tiers": [pricing_service.tier_to_dict(t) for t in tiers]}


@router.post("/purchases", status_code=201)
async def purchase_initiate(
    body: InitiatePurchaseRequest,
    user: User = Depends(get_current_user),
    key: str | None = Depends(idempotency_key),
):
    """Start a credit purchase; pay out of band using the returned instructions. Optional Idempotency-Key."""
    out = await purchases_service.initiate_purchase(
        user.id,
        parse_object_id(body.pricing_tier_id, "Pricing tier"),
        body.payment_method,
        contact=body.contact,
        idempotency_key=key,
    )
    return {
        "purchase_id": str(out.purchase.id),
        "status": out.purchase.status.value,
        "credits_amount": out.purchase.credits_amount,
        "payment_instructions": out.instructions,
    }


@router.get("/purchases")
async def purchase_history(
    user: User = Depends(get_current_user),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
):
    limit, offset = page_to_offset(page, limit)
    history = await purchases_service.list_purchases(user.id, limit=limit, offset=offset)
    return {
        "items": [purchases_service.purchase_to_dict(p) for p in history.purchases],
        "total": history.total,
        "total_spent": history.total_spent,
        "completed_count": history.completed_count,
        "page": page,
        "limit": limit,
    }


@router.get("/purchases/{purchase_id}")
async def purchase_status(purchase_id: str, user: User = Depends(get_current_user)):
    """Poll a purchase until it leaves PENDING."""
    p = await purchases_service.get_purchase_status(parse_object_id(purchase_id, "Purchase"), user.id)
    return {
        "purchase_id": str(p.id),
        "status": p.status.value,
        "credits_amount": p.credits_amount,
        "completed_at": p.completed_at.isoformat() if p.completed_at else None,
        "failure_reason": p.failure_reason,
    }


@router.post("/purchases/{purchase_id}/cancel")
async def purchase_cancel(purchase_id: str, user: User = Depends(get_current_user)):
    p = await purchases_service.cancel_purchase(parse_object_id(purchase_id, "Purchase"), user.id)
    return {"purchase_id": str(p.id), "status": p.status.value}
