import asyncio
from datetime import datetime, timedelta

import pytest
from pymongo.errors import DuplicateKeyError

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, PurchaseNotFoundError
from app.models.audit_log import AuditLog
from app.models.credit_purchase import CreditPurchase, PaymentMethod, PurchaseStatus
from app.models.credit_transaction import CreditTransaction, TransactionType
from app.models.pricing_tier import PricingTier, TierKind
from app.services import credits as credits_service
from app.services import purchases as purchases_service
from app.services.purchases import (
    DuplicateConfirmation,
    PaymentOutcome,
    PurchaseConfirmed,
    PurchaseRejected,
)
from tests.conftest import ledger_sum

pytestmark = pytest.mark.asyncio


async def _initiate(user, tier, **kwargs):
    out = await purchases_service.initiate_purchase(user.id, tier.id, PaymentMethod.MOBILE_MONEY, **kwargs)
    return out.purchase


async def test_initiate_creates_pending_purchase(user, credit_tier):
    out = await purchases_service.initiate_purchase(user.id, credit_tier.id, PaymentMethod.MOBILE_MONEY)
    p = out.purchase
    assert p.status == PurchaseStatus.PENDING
    assert p.credits_amount == 100
    assert p.amount_paid == 10000
    assert p.contact == user.phone
    assert p.transaction_reference.startswith("CR")
    assert out.instructions["reference"] == p.transaction_reference
    assert out.instructions["method"] == "MobileMoney"
    # Nothing is credited before confirmation
    assert await credits_service.get_balance(user.id) == 0


async def test_successful_purchase_credits_balance(user, credit_tier):
    p = await _initiate(user, credit_tier)
    result = await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.SUCCESS)

    assert isinstance(result, PurchaseConfirmed)
    assert result.purchase.status == PurchaseStatus.COMPLETED
    assert result.purchase.completed_at is not None
    assert result.purchase.credit_transaction_id == result.transaction.id
    tx = result.transaction
    assert tx.type == TransactionType.PURCHASE
    assert (tx.amount, tx.balance_before, tx.balance_after) == (100, 0, 100)
    assert tx.reference_id == str(p.id)

    state = await credits_service.get_credit_state(user.id)
    assert state.balance == 100
    assert state.total_credits_earned == 100
    assert state.last_credit_purchase_at is not None


async def test_duplicate_success_credits_once(user, credit_tier):
    p = await _initiate(user, credit_tier)
    first = await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.SUCCESS)
    second = await purchases_service.confirm_purchase(p.transaction_reference.lower(), PaymentOutcome.SUCCESS)

    assert isinstance(first, PurchaseConfirmed)
    assert isinstance(second, DuplicateConfirmation)
    assert second.purchase.status == PurchaseStatus.COMPLETED
    assert await credits_service.get_balance(user.id) == 100
    assert await CreditTransaction.find(CreditTransaction.user_id == user.id).count() == 1


async def test_concurrent_duplicate_confirmations_credit_once(user, credit_tier):
    p = await _initiate(user, credit_tier)
    results = await asyncio.gather(
        *(purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.SUCCESS) for _ in range(5))
    )
    assert sum(isinstance(r, PurchaseConfirmed) for r in results) == 1
    assert sum(isinstance(r, DuplicateConfirmation) for r in results) == 4
    assert await CreditTransaction.find(CreditTransaction.type == TransactionType.PURCHASE).count() == 1
    assert await credits_service.get_balance(user.id) == 100
    assert await ledger_sum(user.id) == 100


async def test_lowercase_reference_prefix_still_confirms(user, credit_tier, monkeypatch):
    monkeypatch.setattr(get_settings(), "payment_reference_prefix", " cr- ")
    p = await _initiate(user, credit_tier)
    assert p.transaction_reference.startswith("CR-")
    assert p.transaction_reference == p.transaction_reference.upper()

    result = await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.SUCCESS)
    assert isinstance(result, PurchaseConfirmed)
    assert await credits_service.get_balance(user.id) == 100
    # payers often type the reference in lower case
    again = await purchases_service.confirm_purchase(p.transaction_reference.lower(), PaymentOutcome.SUCCESS)
    assert isinstance(again, DuplicateConfirmation)


async def test_failed_payment_leaves_balance(user, credit_tier):
    p = await _initiate(user, credit_tier)
    result = await purchases_service.confirm_purchase(
        p.transaction_reference, PaymentOutcome.FAILED, {"reason": "insufficient funds on wallet"}
    )
    assert isinstance(result, PurchaseRejected)
    assert result.purchase.status == PurchaseStatus.FAILED
    assert result.purchase.failure_reason == "insufficient funds on wallet"
    assert await credits_service.get_balance(user.id) == 0
    assert await CreditTransaction.find(CreditTransaction.user_id == user.id).count() == 0


async def test_success_after_failure_is_not_credited(user, credit_tier):
    p = await _initiate(user, credit_tier)
    await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.TIMEOUT)
    late = await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.SUCCESS)

    assert isinstance(late, DuplicateConfirmation)
    assert late.purchase.status == PurchaseStatus.FAILED
    assert await credits_service.get_balance(user.id) == 0
    conflict = await AuditLog.find_one(AuditLog.event_type == "purchase_confirmation_conflict")
    assert conflict is not None
    assert conflict.entity_id == str(p.id)


async def test_cancelled_outcome(user, credit_tier):
    p = await _initiate(user, credit_tier)
    result = await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.CANCELLED)
    assert isinstance(result, PurchaseRejected)
    assert result.purchase.status == PurchaseStatus.CANCELLED
    assert result.purchase.cancelled_at is not None


async def test_unknown_reference(user):
    with pytest.raises(PurchaseNotFoundError):
        await purchases_service.confirm_purchase("CRDOESNOTEXIST", PaymentOutcome.SUCCESS)
    entry = await AuditLog.find_one(AuditLog.event_type == "purchase_not_found")
    assert entry.metadata["transaction_reference"] == "CRDOESNOTEXIST"


async def test_inactive_tier_rejected(user):
    tier = PricingTier(name="Old", kind=TierKind.CREDIT_PACKAGE, credit_amount=10, price=1000, is_active=False)
    await tier.insert()
    with pytest.raises(BadRequestError):
        await _initiate(user, tier)
    assert await CreditPurchase.find_all().count() == 0


async def test_listing_tier_cannot_be_bought(user, listing_tier):
    with pytest.raises(BadRequestError):
        await _initiate(user, listing_tier)


async def test_mobile_money_requires_contact(credit_tier):
    from app.models.user import User
    u = User(email="nophone@example.com")
    await u.insert()
    with pytest.raises(BadRequestError):
        await _initiate(u, credit_tier)
    out = await purchases_service.initiate_purchase(u.id, credit_tier.id, PaymentMethod.CARD)
    assert out.purchase.contact is None


async def test_initiate_idempotency_key_returns_original(user, credit_tier):
    first = await purchases_service.initiate_purchase(
        user.id, credit_tier.id, PaymentMethod.MOBILE_MONEY, idempotency_key="buy-1"
    )
    again = await purchases_service.initiate_purchase(
        user.id, credit_tier.id, PaymentMethod.MOBILE_MONEY, idempotency_key="buy-1"
    )
    assert again.created is False
    assert again.purchase.id == first.purchase.id
    assert await CreditPurchase.find_all().count() == 1


async def test_initiate_idempotency_key_reused_for_other_tier(user, credit_tier):
    other = PricingTier(name="Pro", kind=TierKind.CREDIT_PACKAGE, credit_amount=500, price=40000)
    await other.insert()
    await _initiate(user, credit_tier, idempotency_key="buy-1")
    with pytest.raises(BadRequestError):
        await _initiate(user, other, idempotency_key="buy-1")


async def test_initiate_idempotency_key_race_returns_winner(user, credit_tier, monkeypatch):
    winner = await purchases_service.initiate_purchase(
        user.id, credit_tier.id, PaymentMethod.MOBILE_MONEY, idempotency_key="buy-race"
    )
    lookup = purchases_service._find_by_idempotency_key
    calls = []

    async def late_lookup(user_id, key):
        # first lookup runs before the competing insert became visible
        calls.append(key)
        return None if len(calls) == 1 else await lookup(user_id, key)

    monkeypatch.setattr(purchases_service, "_find_by_idempotency_key", late_lookup)
    loser = await purchases_service.initiate_purchase(
        user.id, credit_tier.id, PaymentMethod.MOBILE_MONEY, idempotency_key="buy-race"
    )
    assert len(calls) == 2
    assert loser.created is False
    assert loser.purchase.id == winner.purchase.id
    assert await CreditPurchase.find_all().count() == 1


async def test_idempotency_key_unique_per_user(user, admin, credit_tier):
    def purchase(user_id, key, ref):
        return CreditPurchase(
            user_id=user_id,
            pricing_tier_id=credit_tier.id,
            credits_amount=100,
            amount_paid=10000,
            currency="UGX",
            payment_method=PaymentMethod.CARD,
            transaction_reference=ref,
            idempotency_key=key,
        )

    await purchase(user.id, "k-1", "CRREF000001").insert()
    with pytest.raises(DuplicateKeyError):
        await purchase(user.id, "k-1", "CRREF000002").insert()
    # same key for another user, and keyless purchases, are unconstrained
    await purchase(admin.id, "k-1", "CRREF000003").insert()
    await purchase(user.id, None, "CRREF000004").insert()
    await purchase(user.id, None, "CRREF000005").insert()
    assert await CreditPurchase.find_all().count() == 4


async def test_cancel_purchase(user, admin, credit_tier):
    p = await _initiate(user, credit_tier)
    with pytest.raises(ForbiddenError):
        await purchases_service.cancel_purchase(p.id, admin.id)
    cancelled = await purchases_service.cancel_purchase(p.id, user.id)
    assert cancelled.status == PurchaseStatus.CANCELLED
    with pytest.raises(BadRequestError):
        await purchases_service.cancel_purchase(p.id, user.id)
    # A payment arriving afterwards does not credit
    late = await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.SUCCESS)
    assert isinstance(late, DuplicateConfirmation)
    assert await credits_service.get_balance(user.id) == 0


async def test_cannot_cancel_completed_purchase(user, credit_tier):
    p = await _initiate(user, credit_tier)
    await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.SUCCESS)
    with pytest.raises(BadRequestError):
        await purchases_service.cancel_purchase(p.id, user.id)


async def test_expire_pending_purchases(user, credit_tier):
    stale = await _initiate(user, credit_tier)
    fresh = await _initiate(user, credit_tier)
    await CreditPurchase.get_motor_collection().update_one(
        {"_id": stale.id}, {"$set": {"created_at": datetime.utcnow() - timedelta(hours=48)}}
    )
    assert await purchases_service.expire_pending_purchases() == 1
    stale = await CreditPurchase.get(stale.id)
    fresh = await CreditPurchase.get(fresh.id)
    assert stale.status == PurchaseStatus.FAILED
    assert stale.failure_reason == "expired"
    assert fresh.status == PurchaseStatus.PENDING
    assert await purchases_service.expire_pending_purchases() == 0


async def test_purchase_history(user, credit_tier):
    done = await _initiate(user, credit_tier)
    await purchases_service.confirm_purchase(done.transaction_reference, PaymentOutcome.SUCCESS)
    await _initiate(user, credit_tier)

    history = await purchases_service.list_purchases(user.id)
    assert history.total == 2
    assert history.completed_count == 1
    assert history.total_spent == 10000
    assert len(history.purchases) == 2


async def test_get_purchase_status_owner_only(user, admin, credit_tier):
    p = await _initiate(user, credit_tier)
    assert (await purchases_service.get_purchase_status(p.id, user.id)).id == p.id
    from app.core.exceptions import NotFoundError
    with pytest.raises(NotFoundError):
        await purchases_service.get_purchase_status(p.id, admin.id)


async def test_purchases_then_ledger_matches_balance(user, credit_tier):
    for _ in range(3):
        p = await _initiate(user, credit_tier)
        await purchases_service.confirm_purchase(p.transaction_reference, PaymentOutcome.SUCCESS)
    assert await credits_service.get_balance(user.id) == 300
    assert await ledger_sum(user.id) == 300
