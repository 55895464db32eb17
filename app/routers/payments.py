from typing import Any

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, Field, ValidationError

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, UnauthorizedError
from app.core.security import verify_webhook_signature
from app.services import purchases as purchases_service
from app.services.purchases import DuplicateConfirmation, PaymentOutcome

router = APIRouter()


class ConfirmPurchaseRequest(BaseModel):
    transaction_reference: str = Field(min_length=1, max_length=64)
    outcome: PaymentOutcome
    provider_metadata: dict[str, Any] = Field(default_factory=dict)


@router.post("/confirm")
async def payment_confirm(
    request: Request,
    x_payment_signature: str = Header(..., alias="X-Payment-Signature"),
):
    """Payment channel callback (provider webhook or SMS relay). Idempotent per transaction_reference."""
    secret = get_settings().payment_webhook_secret
    if not secret:
        raise BadRequestError("Payment webhook secret not configured")
    payload = await request.body()
    if not verify_webhook_signature(payload, x_payment_signature, secret):
        raise UnauthorizedError("Invalid payment signature")
    try:
        body = ConfirmPurchaseRequest.model_validate_json(payload)
    except ValidationError as e:
        raise BadRequestError("Invalid confirmation payload", details={"errors": e.errors(include_url=False, include_context=False)})
    result = await purchases_service.confirm_purchase(
        body.transaction_reference,
        body.outcome,
        body.provider_metadata,
    )
    return {
        "purchase_id": str(result.purchase.id),
        "status": result.purchase.status.value,
        "duplicate": isinstance(result, DuplicateConfirmation),
    }
