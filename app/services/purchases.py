"""Credit purchases: initiation, idempotent confirmation from the payment channel, history."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    BadRequestError,
    ConcurrentModificationError,
    ForbiddenError,
    NotFoundError,
    PurchaseNotFoundError,
)
from app.core.logging import get_logger
from app.models.audit_log import AuditEvent
from app.models.credit_purchase import CreditPurchase, PaymentMethod, PurchaseStatus
from app.models.credit_transaction import CreditTransaction, ReferenceType, TransactionType
from app.models.pricing_tier import TierKind
from app.models.user import User
from app.services import credits as credits_service
from app.services import pricing as pricing_service
from app.services.locks import retry_on_contention, user_lock
from app.services.payment_channel import new_transaction_reference, payment_instructions

log = get_logger(__name__)

MAX_REFERENCE_ATTEMPTS = 5


class PaymentOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class PurchaseInitiation:
    purchase: CreditPurchase
    instructions: dict[str, Any]
    created: bool = True  # False when an Idempotency-Key replay returned the original


@dataclass(frozen=True)
class PurchaseConfirmed:
    purchase: CreditPurchase
    transaction: CreditTransaction


@dataclass(frozen=True)
class PurchaseRejected:
    purchase: CreditPurchase


@dataclass(frozen=True)
class DuplicateConfirmation:
    """Purchase was already resolved; nothing changed."""
    purchase: CreditPurchase


ConfirmationResult = PurchaseConfirmed | PurchaseRejected | DuplicateConfirmation


@dataclass
class PurchaseHistory:
    purchases: list[CreditPurchase]
    total: int
    total_spent: int
    completed_count: int
    limit: int = 50
    offset: int = 0


def _purchases():
    return CreditPurchase.get_motor_collection()


async def _find_by_idempotency_key(user_id: PydanticObjectId, idempotency_key: str) -> CreditPurchase | None:
    return await CreditPurchase.find_one(
        CreditPurchase.user_id == user_id,
        CreditPurchase.idempotency_key == idempotency_key,
    )


def _replayed_initiation(existing: CreditPurchase, pricing_tier_id: PydanticObjectId) -> PurchaseInitiation:
    if existing.pricing_tier_id != pricing_tier_id:
        raise BadRequestError("Idempotency-Key was already used for a different purchase")
    return PurchaseInitiation(existing, payment_instructions(existing), created=False)


async def initiate_purchase(
    user_id: PydanticObjectId,
    pricing_tier_id: PydanticObjectId,
    payment_method: PaymentMethod,
    contact: str | None = None,
    idempotency_key: str | None = None,
) -> PurchaseInitiation:
    """Create a PENDING purchase for a credit package and return payment instructions."""
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    if idempotency_key:
        existing = await _find_by_idempotency_key(user_id, idempotency_key)
        if existing:
            return _replayed_initiation(existing, pricing_tier_id)

    tier = await pricing_service.get_active_tier(pricing_tier_id, TierKind.CREDIT_PACKAGE)
    if tier.total_credits <= 0:
        raise BadRequestError("Pricing tier grants no credits")
    contact = (contact or user.phone or "").strip() or None
    if payment_method == PaymentMethod.MOBILE_MONEY and not contact:
        raise BadRequestError("A mobile money number is required")

    for _ in range(MAX_REFERENCE_ATTEMPTS):
        purchase = CreditPurchase(
            user_id=user_id,
            pricing_tier_id=pricing_tier_id,
            credits_amount=tier.total_credits,
            amount_paid=tier.price,
            currency=tier.currency,
            payment_method=payment_method,
            contact=contact,
            transaction_reference=new_transaction_reference(),
            idempotency_key=idempotency_key,
        )
        try:
            await purchase.insert()
            break
        except DuplicateKeyError:
            if idempotency_key:
                # a concurrent request with the same key inserted first
                existing = await _find_by_idempotency_key(user_id, idempotency_key)
                if existing:
                    log.info("purchase_idempotency_race", user_id=str(user_id), purchase_id=str(existing.id))
                    return _replayed_initiation(existing, pricing_tier_id)
            log.warning("transaction_reference_collision", reference=purchase.transaction_reference)
    else:
        raise AppError("Could not allocate a payment reference", code="REFERENCE_UNAVAILABLE")

    log.info(
        "purchase_initiated",
        user_id=str(user_id),
        purchase_id=str(purchase.id),
        reference=purchase.transaction_reference,
        credits=purchase.credits_amount,
        amount=purchase.amount_paid,
    )
    await log_event(
        str(user_id),
        AuditEvent.PURCHASE_INITIATED,
        "credit_purchase",
        str(purchase.id),
        {"pricing_tier_id": str(pricing_tier_id), "credits": purchase.credits_amount, "amount": purchase.amount_paid},
    )
    return PurchaseInitiation(purchase, payment_instructions(purchase))


async def confirm_purchase(
    transaction_reference: str,
    outcome: PaymentOutcome,
    provider_metadata: dict[str, Any] | None = None,
) -> ConfirmationResult:
    """
    Resolve a purchase from the payment channel (webhook or SMS relay).
    Delivery is at-least-once: a reference that is already resolved returns
    DuplicateConfirmation and never credits twice.
    """
    reference = (transaction_reference or "").strip().upper()
    metadata = dict(provider_metadata or {})
    purchase = await CreditPurchase.find_one(CreditPurchase.transaction_reference == reference)
    if not purchase:
        log.error("purchase_not_found", transaction_reference=reference, outcome=outcome.value)
        await log_event(
            None,
            AuditEvent.PURCHASE_NOT_FOUND,
            "credit_purchase",
            None,
            {"transaction_reference": reference, "outcome": outcome.value, "provider_metadata": metadata},
        )
        raise PurchaseNotFoundError(reference)
    if purchase.is_terminal:
        return await _duplicate(purchase, outcome)
    if outcome == PaymentOutcome.SUCCESS:
        return await retry_on_contention(_complete_purchase, purchase.id, metadata)
    return await _reject_purchase(purchase, outcome, metadata)


async def _duplicate(purchase: CreditPurchase, outcome: PaymentOutcome) -> DuplicateConfirmation:
    consistent = (purchase.status == PurchaseStatus.COMPLETED) == (outcome == PaymentOutcome.SUCCESS)
    if consistent:
        log.info(
            "duplicate_confirmation",
            purchase_id=str(purchase.id),
            reference=purchase.transaction_reference,
            status=purchase.status.value,
        )
    else:
        # e.g. money arrived after the purchase expired: needs a human
        log.warning(
            "conflicting_confirmation",
            purchase_id=str(purchase.id),
            reference=purchase.transaction_reference,
            status=purchase.status.value,
            outcome=outcome.value,
        )
        await log_event(
            str(purchase.user_id),
            AuditEvent.PURCHASE_CONFIRMATION_CONFLICT,
            "credit_purchase",
            str(purchase.id),
            {"status": purchase.status.value, "outcome": outcome.value},
        )
    return DuplicateConfirmation(purchase)


async def _complete_purchase(purchase_id: PydanticObjectId, metadata: dict[str, Any]) -> ConfirmationResult:
    purchase = await CreditPurchase.get(purchase_id)
    async with user_lock(purchase.user_id) as lease:
        purchase = await CreditPurchase.get(purchase_id)
        if purchase.is_terminal:
            return await _duplicate(purchase, PaymentOutcome.SUCCESS)
        state = await credits_service.get_credit_state(purchase.user_id)
        now = datetime.utcnow()
        transaction = await credits_service.append_transaction(
            lease,
            credits_service.NewTransaction(
                user_id=purchase.user_id,
                type=TransactionType.PURCHASE,
                amount=purchase.credits_amount,
                balance_before=state.balance,
                reference_type=ReferenceType.PURCHASE,
                reference_id=str(purchase.id),
                description=f"Purchased {purchase.credits_amount} credits",
                metadata={
                    "transaction_reference": purchase.transaction_reference,
                    "pricing_tier_id": str(purchase.pricing_tier_id),
                    "amount_paid": purchase.amount_paid,
                    "currency": purchase.currency,
                },
                idempotency_key=f"purchase:{purchase.transaction_reference}",
            ),
            credits_service.CreditStateChange(credits_earned=purchase.credits_amount, purchased_at=now),
        )
        result = await _purchases().update_one(
            {"_id": purchase.id, "status": PurchaseStatus.PENDING.value},
            {
                "$set": {
                    "status": PurchaseStatus.COMPLETED.value,
                    "completed_at": now,
                    "updated_at": now,
                    "credit_transaction_id": transaction.id,
                    "provider_metadata": metadata,
                }
            },
        )
        if result.matched_count != 1:
            # Failed/cancelled/expired between our read and write; undo and let the retry see it.
            await credits_service.rollback_transaction(lease, transaction, state)
            raise ConcurrentModificationError(str(purchase.user_id))

    purchase = await CreditPurchase.get(purchase_id)
    log.info(
        "purchase_completed",
        user_id=str(purchase.user_id),
        purchase_id=str(purchase.id),
        reference=purchase.transaction_reference,
        credits=purchase.credits_amount,
        balance_after=transaction.balance_after,
    )
    await log_event(
        str(purchase.user_id),
        AuditEvent.PURCHASE_COMPLETED,
        "credit_purchase",
        str(purchase.id),
        {"credits": purchase.credits_amount, "transaction_id": str(transaction.id)},
    )
    return PurchaseConfirmed(purchase, transaction)


async def _close_pending(
    purchase_id: PydanticObjectId,
    status: PurchaseStatus,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """PENDING -> FAILED/CANCELLED; False if the purchase was no longer pending."""
    now = datetime.utcnow()
    fields: dict[str, Any] = {"status": status.value, "updated_at": now}
    if status == PurchaseStatus.CANCELLED:
        fields["cancelled_at"] = now
    else:
        fields["failed_at"] = now
        fields["failure_reason"] = reason
    if metadata:
        fields["provider_metadata"] = metadata
    result = await _purchases().update_one(
        {"_id": purchase_id, "status": PurchaseStatus.PENDING.value},
        {"$set": fields},
    )
    return result.matched_count == 1


async def _reject_purchase(
    purchase: CreditPurchase,
    outcome: PaymentOutcome,
    metadata: dict[str, Any],
) -> ConfirmationResult:
    if outcome == PaymentOutcome.CANCELLED:
        status, reason = PurchaseStatus.CANCELLED, None
    else:
        status = PurchaseStatus.FAILED
        reason = str(metadata.get("reason") or metadata.get("failure_reason") or outcome.value.lower())[:500]
    closed = await _close_pending(purchase.id, status, reason, metadata)
    purchase = await CreditPurchase.get(purchase.id)
    if not closed:
        return await _duplicate(purchase, outcome)
    log.info(
        "purchase_rejected",
        user_id=str(purchase.user_id),
        purchase_id=str(purchase.id),
        reference=purchase.transaction_reference,
        status=purchase.status.value,
        reason=reason,
    )
    await log_event(
        str(purchase.user_id),
        AuditEvent.PURCHASE_REJECTED,
        "credit_purchase",
        str(purchase.id),
        {"status": purchase.status.value, "reason": reason},
    )
    return PurchaseRejected(purchase)


async def get_purchase_status(
    purchase_id: PydanticObjectId,
    user_id: PydanticObjectId | None = None,
) -> CreditPurchase:
    """Purchase for client polling; user_id restricts to the owner."""
    purchase = await CreditPurchase.get(purchase_id)
    if not purchase or (user_id is not None and purchase.user_id != user_id):
        raise NotFoundError("Purchase not found")
    return purchase


async def list_purchases(user_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> PurchaseHistory:
    """Newest first, with total spent on completed purchases."""
    total = await CreditPurchase.find(CreditPurchase.user_id == user_id).count()
    items = (
        await CreditPurchase.find(CreditPurchase.user_id == user_id)
        .sort("-created_at", "-_id")
        .skip(offset)
        .limit(limit)
        .to_list()
    )
    completed = await CreditPurchase.find(
        CreditPurchase.user_id == user_id,
        CreditPurchase.status == PurchaseStatus.COMPLETED,
    ).to_list()
    return PurchaseHistory(
        purchases=items,
        total=total,
        total_spent=sum(p.amount_paid for p in completed),
        completed_count=len(completed),
        limit=limit,
        offset=offset,
    )


async def cancel_purchase(purchase_id: PydanticObjectId, user_id: PydanticObjectId) -> CreditPurchase:
    """Payer abandons a pending purchase."""
    purchase = await CreditPurchase.get(purchase_id)
    if not purchase:
        raise NotFoundError("Purchase not found")
    if purchase.user_id != user_id:
        raise ForbiddenError("You can only cancel your own purchases")
    if purchase.status == PurchaseStatus.COMPLETED:
        raise BadRequestError("Cannot cancel a completed purchase")
    if purchase.status in (PurchaseStatus.FAILED, PurchaseStatus.CANCELLED):
        raise BadRequestError("Purchase already closed")
    if not await _close_pending(purchase.id, PurchaseStatus.CANCELLED):
        raise BadRequestError("Purchase was resolved while cancelling")
    purchase = await CreditPurchase.get(purchase_id)
    log.info("purchase_cancelled", user_id=str(user_id), purchase_id=str(purchase_id))
    await log_event(str(user_id), AuditEvent.PURCHASE_CANCELLED, "credit_purchase", str(purchase_id))
    return purchase


async def expire_pending_purchases(older_than: timedelta | None = None) -> int:
    """Fail purchases left PENDING past the TTL; returns how many were expired."""
    if older_than is None:
        older_than = timedelta(hours=get_settings().purchase_pending_ttl_hours)
    cutoff = datetime.utcnow() - older_than
    stale = await CreditPurchase.find(
        CreditPurchase.status == PurchaseStatus.PENDING,
        CreditPurchase.created_at < cutoff,
    ).to_list()
    expired = 0
    for p in stale:
        if await _close_pending(p.id, PurchaseStatus.FAILED, "expired"):
            expired += 1
            log.info("purchase_expired", user_id=str(p.user_id), purchase_id=str(p.id), reference=p.transaction_reference)
    if expired:
        await log_event(None, AuditEvent.PURCHASES_EXPIRED, "credit_purchase", None, {"count": expired, "cutoff": cutoff.isoformat()})
    return expired


def purchase_to_dict(p: CreditPurchase) -> dict[str, Any]:
    return {
        "id": str(p.id),
        "status": p.status.value,
        "pricing_tier_id": str(p.pricing_tier_id),
        "credits_amount": p.credits_amount,
        "amount_paid": p.amount_paid,
        "currency": p.currency,
        "payment_method": p.payment_method.value,
        "transaction_reference": p.transaction_reference,
        "created_at": p.created_at.isoformat(),
        "completed_at": p.completed_at.isoformat() if p.completed_at else None,
        "failure_reason": p.failure_reason,
    }
