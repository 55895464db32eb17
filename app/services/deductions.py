"""Paid resource creation: debit credits and create the resource as one unit of work."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from beanie import PydanticObjectId

from app.core.audit import log_event
from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.models.audit_log import AuditEvent
from app.models.credit_transaction import CreditTransaction, ReferenceType, TransactionType
from app.models.pricing_tier import PricingTier, TierKind
from app.models.user import User
from app.services import credits as credits_service
from app.services import pricing as pricing_service
from app.services.locks import retry_on_contention, user_lock

log = get_logger(__name__)


@dataclass(frozen=True)
class CreditSpend:
    """Confirmation handed to the resource factory that the debit is recorded."""
    user_id: PydanticObjectId
    pricing_tier_id: PydanticObjectId
    credits: int
    transaction_id: PydanticObjectId | None  # None for free tiers


class ResourceFactory(ABC):
    """Collaborator that persists the paid resource; must undo its own writes on discard."""

    @abstractmethod
    async def create(self, spend: CreditSpend) -> str:
        """Persist the resource and return its id."""

    @abstractmethod
    async def link(self, resource_id: str, transaction_id: PydanticObjectId) -> None:
        """Record the paying DEDUCTION on the resource."""

    @abstractmethod
    async def discard(self, resource_id: str) -> None:
        """Remove a resource whose debit is being rolled back."""


@dataclass(frozen=True)
class DeductionSucceeded:
    resource_id: str
    transaction_id: PydanticObjectId | None
    remaining_balance: int
    credits_spent: int = 0
    replayed: bool = False  # same Idempotency-Key seen before; nothing new was written


@dataclass(frozen=True)
class InsufficientCredits:
    required: int
    available: int

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)


DeductionResult = DeductionSucceeded | InsufficientCredits


async def create_paid_resource(
    user_id: PydanticObjectId,
    pricing_tier_id: PydanticObjectId,
    factory: ResourceFactory,
    idempotency_key: str | None = None,
) -> DeductionResult:
    """
    Debit the tier's credits_cost and create the resource, or do neither.
    Affordability is an expected outcome, returned as InsufficientCredits.
    Pass idempotency_key to make retries after an ambiguous timeout safe.
    """
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    tier = await pricing_service.get_active_tier(pricing_tier_id, TierKind.LISTING)
    required = tier.credits_cost

    if idempotency_key:
        replay = await _replay(user_id, idempotency_key)
        if replay:
            return replay

    # Best-effort pre-check outside the lock; the authoritative one is repeated under it.
    available = await credits_service.get_balance(user_id)
    if available < required:
        log.info("insufficient_credits", user_id=str(user_id), required=required, available=available, stage="precheck")
        return InsufficientCredits(required=required, available=available)

    if required == 0:
        return await _create_free(user_id, tier, factory, available)
    return await retry_on_contention(_debit_and_create, user_id, tier, factory, idempotency_key)


async def _replay(user_id: PydanticObjectId, idempotency_key: str) -> DeductionSucceeded | None:
    previous = await credits_service.find_by_idempotency_key(user_id, idempotency_key, TransactionType.DEDUCTION)
    if not previous or previous.reference_id is None:
        return None
    log.info("deduction_replayed", user_id=str(user_id), transaction_id=str(previous.id))
    return DeductionSucceeded(
        resource_id=previous.reference_id,
        transaction_id=previous.id,
        remaining_balance=await credits_service.get_balance(user_id),
        credits_spent=-previous.amount,
        replayed=True,
    )


async def _create_free(
    user_id: PydanticObjectId,
    tier: PricingTier,
    factory: ResourceFactory,
    balance: int,
) -> DeductionSucceeded:
    resource_id = await factory.create(
        CreditSpend(user_id=user_id, pricing_tier_id=tier.id, credits=0, transaction_id=None)
    )
    log.info("free_resource_created", user_id=str(user_id), resource_id=resource_id, pricing_tier_id=str(tier.id))
    return DeductionSucceeded(resource_id=resource_id, transaction_id=None, remaining_balance=balance)


async def _debit_and_create(
    user_id: PydanticObjectId,
    tier: PricingTier,
    factory: ResourceFactory,
    idempotency_key: str | None,
) -> DeductionResult:
    required = tier.credits_cost
    async with user_lock(user_id) as lease:
        if idempotency_key:
            replay = await _replay(user_id, idempotency_key)
            if replay:
                return replay
        state = await credits_service.get_credit_state(user_id)
        if state.balance < required:
            log.info("insufficient_credits", user_id=str(user_id), required=required, available=state.balance, stage="locked")
            return InsufficientCredits(required=required, available=state.balance)

        transaction = await credits_service.append_transaction(
            lease,
            credits_service.NewTransaction(
                user_id=user_id,
                type=TransactionType.DEDUCTION,
                amount=-required,
                balance_before=state.balance,
                reference_type=ReferenceType.RESOURCE,
                description=f"{tier.name} listing",
                metadata={"pricing_tier_id": str(tier.id)},
                idempotency_key=idempotency_key,
            ),
        )
        spend = CreditSpend(user_id=user_id, pricing_tier_id=tier.id, credits=required, transaction_id=transaction.id)
        try:
            resource_id = await factory.create(spend)
        except Exception:
            log.warning("resource_creation_failed", user_id=str(user_id), transaction_id=str(transaction.id))
            await credits_service.rollback_transaction(lease, transaction, state)
            raise
        try:
            await credits_service.set_transaction_reference(transaction, resource_id)
            await factory.link(resource_id, transaction.id)
        except Exception:
            log.warning("resource_link_failed", user_id=str(user_id), resource_id=resource_id)
            await factory.discard(resource_id)
            await credits_service.rollback_transaction(lease, transaction, state)
            raise

    log.info(
        "paid_resource_created",
        user_id=str(user_id),
        resource_id=resource_id,
        transaction_id=str(transaction.id),
        credits=required,
        balance_after=transaction.balance_after,
    )
    await log_event(
        str(user_id),
        AuditEvent.CREDITS_DEDUCTED,
        "credit_transaction",
        str(transaction.id),
        {"resource_id": resource_id, "credits": required, "pricing_tier_id": str(tier.id)},
    )
    return DeductionSucceeded(
        resource_id=resource_id,
        transaction_id=transaction.id,
        remaining_balance=transaction.balance_after,
        credits_spent=required,
    )


async def get_deduction_for_resource(resource_id: str) -> CreditTransaction | None:
    return await CreditTransaction.find_one(
        CreditTransaction.type == TransactionType.DEDUCTION,
        CreditTransaction.reference_type == ReferenceType.RESOURCE,
        CreditTransaction.reference_id == resource_id,
    )


async def list_resource_transactions(resource_id: str) -> list[CreditTransaction]:
    """Ledger entries charged or refunded against one paid resource, oldest first."""
    return await CreditTransaction.find(
        CreditTransaction.reference_type == ReferenceType.RESOURCE,
        CreditTransaction.reference_id == resource_id,
    ).sort("created_at", "_id").to_list()
