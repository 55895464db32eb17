"""Admin corrections: manual adjustments and refunds of listing deductions."""

from beanie import PydanticObjectId

from app.core.audit import log_event
from app.core.exceptions import BadRequestError, NotFoundError
from app.core.logging import get_logger
from app.models.audit_log import AuditEvent
from app.models.credit_transaction import CreditTransaction, ReferenceType, TransactionType
from app.models.user import User
from app.services import credits as credits_service
from app.services.deductions import InsufficientCredits, get_deduction_for_resource
from app.services.locks import retry_on_contention, user_lock

log = get_logger(__name__)


async def adjust_balance(
    user_id: PydanticObjectId,
    amount: int,
    reason: str,
    admin_id: str,
) -> CreditTransaction | InsufficientCredits:
    """ADJUSTMENT entry by an admin. A debit larger than the balance is refused, never clamped."""
    if amount == 0:
        raise BadRequestError("Adjustment amount must not be zero")
    reason = (reason or "").strip()
    if not reason:
        raise BadRequestError("Adjustment reason is required")
    if not await User.get(user_id):
        raise NotFoundError("User not found")
    result = await retry_on_contention(_adjust, user_id, amount, reason, admin_id)
    if isinstance(result, CreditTransaction):
        log.info("credits_adjusted", user_id=str(user_id), admin_id=admin_id, amount=amount, balance_after=result.balance_after)
        await log_event(
            str(user_id),
            AuditEvent.CREDITS_ADJUSTED,
            "credit_transaction",
            str(result.id),
            {"amount": amount, "reason": reason},
            actor_id=admin_id,
        )
    return result


async def _adjust(
    user_id: PydanticObjectId,
    amount: int,
    reason: str,
    admin_id: str,
) -> CreditTransaction | InsufficientCredits:
    async with user_lock(user_id) as lease:
        state = await credits_service.get_credit_state(user_id)
        if state.balance + amount < 0:
            return InsufficientCredits(required=-amount, available=state.balance)
        return await credits_service.append_transaction(
            lease,
            credits_service.NewTransaction(
                user_id=user_id,
                type=TransactionType.ADJUSTMENT,
                amount=amount,
                balance_before=state.balance,
                reference_type=ReferenceType.ADMIN,
                reference_id=admin_id,
                description=reason,
                created_by=admin_id,
            ),
        )


async def refund_resource(resource_id: str, reason: str, admin_id: str) -> CreditTransaction:
    """Give back the credits spent on a resource. At most one refund per deduction."""
    deduction = await get_deduction_for_resource(resource_id)
    if not deduction:
        raise NotFoundError("No credit deduction found for this resource")
    return await retry_on_contention(_refund, deduction, (reason or "").strip(), admin_id)


async def _refund(deduction: CreditTransaction, reason: str, admin_id: str) -> CreditTransaction:
    key = f"refund:{deduction.id}"
    async with user_lock(deduction.user_id) as lease:
        existing = await credits_service.find_by_idempotency_key(deduction.user_id, key, TransactionType.REFUND)
        if existing:
            log.info("refund_already_applied", transaction_id=str(existing.id), deduction_id=str(deduction.id))
            return existing
        state = await credits_service.get_credit_state(deduction.user_id)
        refund = await credits_service.append_transaction(
            lease,
            credits_service.NewTransaction(
                user_id=deduction.user_id,
                type=TransactionType.REFUND,
                amount=-deduction.amount,
                balance_before=state.balance,
                reference_type=ReferenceType.RESOURCE,
                reference_id=deduction.reference_id,
                description=reason or "Listing refund",
                metadata={"deduction_id": str(deduction.id)},
                created_by=admin_id,
                idempotency_key=key,
            ),
        )
    log.info("credits_refunded", user_id=str(deduction.user_id), resource_id=deduction.reference_id, amount=refund.amount)
    await log_event(
        str(deduction.user_id),
        AuditEvent.CREDITS_REFUNDED,
        "credit_transaction",
        str(refund.id),
        {"deduction_id": str(deduction.id), "resource_id": deduction.reference_id, "amount": refund.amount},
        actor_id=admin_id,
    )
    return refund
