"""Credit ledger store: balances, append-only transactions and their atomic updates.

Every balance change is a compare-and-set on the user's CreditBalance row,
guarded by the caller's lease (see app.services.locks) and by the
balance_before snapshot, followed by the insert of the matching
CreditTransaction. Callers never set a balance directly.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from beanie import PydanticObjectId
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import ConcurrentModificationError, InvariantViolationError
from app.core.logging import get_logger
from app.models.credit_balance import CreditBalance
from app.models.credit_transaction import CreditTransaction, ReferenceType, TransactionType

if TYPE_CHECKING:
    from app.services.locks import LedgerLease

log = get_logger(__name__)


class NewTransaction(BaseModel):
    """Ledger entry to append; balance_before is the value read under the lease."""
    user_id: PydanticObjectId
    type: TransactionType
    amount: int
    balance_before: int
    reference_type: ReferenceType
    reference_id: str | None = None
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None
    idempotency_key: str | None = None

    @property
    def balance_after(self) -> int:
        return self.balance_before + self.amount


@dataclass(frozen=True)
class CreditStateChange:
    """Side effects of a completed purchase on the user's credit state."""
    credits_earned: int = 0
    purchased_at: datetime | None = None


def _balances():
    return CreditBalance.get_motor_collection()


async def get_balance(user_id: PydanticObjectId) -> int:
    """Return current balance for user (0 if no record)."""
    state = await get_credit_state(user_id)
    return state.balance if state else 0


async def get_credit_state(user_id: PydanticObjectId) -> CreditBalance | None:
    return await CreditBalance.find_one(CreditBalance.user_id == user_id)


async def ensure_credit_state(user_id: PydanticObjectId) -> None:
    """Create the user's zero-balance row if missing. Safe under concurrent callers."""
    now = datetime.utcnow()
    defaults = {
        "balance": 0,
        "total_credits_earned": 0,
        "last_credit_purchase_at": None,
        "lock_owner": None,
        "lock_expires_at": None,
        "created_at": now,
        "updated_at": now,
    }
    try:
        await _balances().update_one(
            {"user_id": user_id},
            {"$setOnInsert": defaults},
            upsert=True,
        )
    except DuplicateKeyError:
        # Lost the upsert race; the row exists now.
        pass


async def append_transaction(
    lease: "LedgerLease",
    entry: NewTransaction,
    change: CreditStateChange | None = None,
) -> CreditTransaction:
    """
    Write one ledger entry and move the user's balance from entry.balance_before
    to entry.balance_after in the same unit of work.
    Raises InvariantViolationError on a negative result or stale balance_before,
    ConcurrentModificationError if the lease was lost.
    """
    if entry.user_id != lease.user_id:
        raise InvariantViolationError(
            "Lease does not cover this user",
            details={"user_id": str(entry.user_id), "lease_user_id": str(lease.user_id)},
        )
    balance_after = entry.balance_after
    if balance_after < 0:
        log.error(
            "negative_balance_rejected",
            user_id=str(entry.user_id),
            balance_before=entry.balance_before,
            amount=entry.amount,
        )
        raise InvariantViolationError(
            "Transaction would make the balance negative",
            details={"user_id": str(entry.user_id), "balance_before": entry.balance_before, "amount": entry.amount},
        )

    now = datetime.utcnow()
    update: dict[str, Any] = {"$set": {"balance": balance_after, "updated_at": now}}
    if change and change.credits_earned:
        update["$inc"] = {"total_credits_earned": change.credits_earned}
    if change and change.purchased_at:
        update["$set"]["last_credit_purchase_at"] = change.purchased_at
    result = await _balances().update_one(
        {**lease.guard(), "balance": entry.balance_before},
        update,
    )
    if result.matched_count != 1:
        await _raise_write_conflict(lease, entry)

    transaction = CreditTransaction(
        **entry.model_dump(),
        balance_after=balance_after,
        created_at=now,
    )
    try:
        await transaction.insert()
    except Exception:
        log.exception("credit_transaction_insert_failed", user_id=str(entry.user_id), type=entry.type.value)
        revert: dict[str, Any] = {"$set": {"balance": entry.balance_before, "updated_at": datetime.utcnow()}}
        if change and change.credits_earned:
            revert["$inc"] = {"total_credits_earned": -change.credits_earned}
        await _balances().update_one({**lease.guard(), "balance": balance_after}, revert)
        raise
    log.info(
        "credit_transaction_appended",
        user_id=str(entry.user_id),
        transaction_id=str(transaction.id),
        type=entry.type.value,
        amount=entry.amount,
        balance_after=balance_after,
    )
    return transaction


async def _raise_write_conflict(lease: "LedgerLease", entry: NewTransaction) -> None:
    state = await get_credit_state(entry.user_id)
    if state is None or state.lock_owner != lease.token:
        log.warning("ledger_lease_lost", user_id=str(entry.user_id))
        raise ConcurrentModificationError(str(entry.user_id))
    log.error(
        "stale_balance_before",
        user_id=str(entry.user_id),
        expected=entry.balance_before,
        actual=state.balance,
    )
    raise InvariantViolationError(
        "balance_before does not match the stored balance",
        details={"user_id": str(entry.user_id), "balance_before": entry.balance_before, "stored_balance": state.balance},
    )


async def rollback_transaction(
    lease: "LedgerLease",
    transaction: CreditTransaction,
    previous: CreditBalance,
) -> None:
    """Undo an append made earlier in the same unit of work: restore the state row and drop the entry."""
    result = await _balances().update_one(
        {**lease.guard(), "balance": transaction.balance_after},
        {
            "$set": {
                "balance": previous.balance,
                "total_credits_earned": previous.total_credits_earned,
                "last_credit_purchase_at": previous.last_credit_purchase_at,
                "updated_at": datetime.utcnow(),
            }
        },
    )
    if result.matched_count != 1:
        log.error(
            "credit_rollback_failed",
            user_id=str(transaction.user_id),
            transaction_id=str(transaction.id),
        )
        raise InvariantViolationError(
            "Could not roll back credit transaction",
            details={"user_id": str(transaction.user_id), "transaction_id": str(transaction.id)},
        )
    await transaction.delete()
    log.info(
        "credit_transaction_rolled_back",
        user_id=str(transaction.user_id),
        transaction_id=str(transaction.id),
        amount=transaction.amount,
    )


async def set_transaction_reference(transaction: CreditTransaction, reference_id: str) -> None:
    """Back-fill reference_id of an entry appended without one (deductions)."""
    result = await CreditTransaction.get_motor_collection().update_one(
        {"_id": transaction.id, "reference_id": None},
        {"$set": {"reference_id": reference_id}},
    )
    if result.matched_count != 1:
        raise InvariantViolationError(
            "Transaction reference already set",
            details={"transaction_id": str(transaction.id)},
        )
    transaction.reference_id = reference_id


async def find_by_idempotency_key(
    user_id: PydanticObjectId,
    idempotency_key: str,
    type: TransactionType | None = None,
) -> CreditTransaction | None:
    query = [CreditTransaction.user_id == user_id, CreditTransaction.idempotency_key == idempotency_key]
    if type is not None:
        query.append(CreditTransaction.type == type)
    return await CreditTransaction.find_one(*query)


async def list_transactions(
    user_id: PydanticObjectId,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CreditTransaction], int]:
    """Newest first; returns (page, total)."""
    query = CreditTransaction.find(CreditTransaction.user_id == user_id)
    total = await query.count()
    items = await (
        CreditTransaction.find(CreditTransaction.user_id == user_id)
        .sort("-created_at", "-_id")
        .skip(offset)
        .limit(limit)
        .to_list()
    )
    return items, total


def transaction_to_dict(t: CreditTransaction) -> dict[str, Any]:
    return {
        "id": str(t.id),
        "type": t.type.value,
        "amount": t.amount,
        "balance_before": t.balance_before,
        "balance_after": t.balance_after,
        "reference_type": t.reference_type.value,
        "reference_id": t.reference_id,
        "description": t.description,
        "metadata": t.metadata,
        "created_by": t.created_by,
        "created_at": t.created_at.isoformat(),
    }
