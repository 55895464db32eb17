from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.core.exceptions import BadRequestError, NotFoundError
from app.deps import parse_object_id, require_admin
from app.models.user import User
from app.services import adjustments as adjustments_service
from app.services import credits as credits_service
from app.services import reconciliation as reconciliation_service
from app.services.deductions import InsufficientCredits

router = APIRouter()


class AdjustmentRequest(BaseModel):
    user_id: str
    amount: int
    reason: str = Field(min_length=1, max_length=500)


class RefundRequest(BaseModel):
    resource_id: str
    reason: str = Field(default="", max_length=500)


@router.post("/credits/adjustments", status_code=201)
async def admin_credit_adjustment(body: AdjustmentRequest, admin: User = Depends(require_admin)):
    """Admin: credit or debit a user's balance with an audited ADJUSTMENT entry."""
    result = await adjustments_service.adjust_balance(
        parse_object_id(body.user_id, "User"),
        body.amount,
        body.reason,
        str(admin.id),
    )
    if isinstance(result, InsufficientCredits):
        raise BadRequestError(
            "Adjustment would make the balance negative",
            details={"required": result.required, "available": result.available},
        )
    return credits_service.transaction_to_dict(result)


@router.post("/credits/refunds", status_code=201)
async def admin_credit_refund(body: RefundRequest, admin: User = Depends(require_admin)):
    """Admin: refund the credits spent on a resource (once)."""
    refund = await adjustments_service.refund_resource(body.resource_id, body.reason, str(admin.id))
    return credits_service.transaction_to_dict(refund)


@router.post("/reconciliation/run")
async def admin_reconciliation_run(admin: User = Depends(require_admin)):
    """Admin: run the balance reconciliation now (read-only)."""
    report = await reconciliation_service.run_reconciliation()
    return reconciliation_service.report_to_dict(report)


@router.get("/reconciliation/latest")
async def admin_reconciliation_latest(admin: User = Depends(require_admin)):
    report = await reconciliation_service.latest_report()
    if not report:
        raise NotFoundError("No reconciliation report yet")
    return reconciliation_service.report_to_dict(report)
