from datetime import datetime, timedelta

import pytest

from app.models.audit_log import AuditLog
from app.models.credit_balance import CreditBalance
from app.models.failed_job import FailedJob
from app.services import credits as credits_service
from app.services import reconciliation as reconciliation_service
from app.services.locks import user_lock
from tests.conftest import grant_credits

pytestmark = pytest.mark.asyncio


async def _tamper(user_id, balance: int):
    """Simulate drift: change the stored balance without a ledger entry."""
    await CreditBalance.get_motor_collection().update_one({"user_id": user_id}, {"$set": {"balance": balance}})


async def test_consistent_ledger_reports_nothing(user, admin):
    await grant_credits(user.id, 100)
    await grant_credits(admin.id, 5)
    report = await reconciliation_service.run_reconciliation()
    assert report.users_checked == 2
    assert report.transactions_checked == 2
    assert report.discrepancy_count == 0
    assert report.finished_at is not None


async def test_mismatch_is_reported_not_corrected(user):
    await grant_credits(user.id, 100)
    await _tamper(user.id, 130)

    report = await reconciliation_service.run_reconciliation()
    assert report.discrepancy_count == 1
    d = report.discrepancies[0]
    assert d.user_id == str(user.id)
    assert (d.stored_balance, d.ledger_balance, d.difference) == (130, 100, 30)
    assert d.confirmed is False
    # Detection only
    assert await credits_service.get_balance(user.id) == 130
    assert await AuditLog.find_one(AuditLog.event_type == "reconciliation_discrepancy") is None


async def test_repeated_mismatch_is_escalated(user):
    await grant_credits(user.id, 100)
    await _tamper(user.id, 90)
    await reconciliation_service.run_reconciliation()
    second = await reconciliation_service.run_reconciliation()

    assert second.discrepancies[0].confirmed is True
    alert = await AuditLog.find_one(AuditLog.event_type == "reconciliation_discrepancy")
    assert alert.user_id == str(user.id)
    assert alert.metadata["report_id"] == str(second.id)
    assert (await reconciliation_service.latest_report()).id == second.id


async def test_balance_row_without_transactions(user):
    async with user_lock(user.id):
        pass
    await _tamper(user.id, 15)
    report = await reconciliation_service.run_reconciliation()
    assert report.discrepancies[0].ledger_balance == 0
    assert report.discrepancies[0].transaction_count == 0


async def test_reconcile_job_records_failures(monkeypatch):
    from app.worker import cron, tasks

    async def boom():
        raise RuntimeError("mongo down")

    monkeypatch.setattr(cron, "run_reconcile_credit_ledger", boom)
    with pytest.raises(RuntimeError):
        await tasks.reconcile_credit_ledger({"job_id": "job-1", "job_try": 2})
    failed = await FailedJob.find_one(FailedJob.job_id == "job-1")
    assert failed.job_name == "reconcile_credit_ledger"
    assert failed.error_type == "RuntimeError"
    assert failed.job_try == 2
    assert failed.kwargs == {}


async def test_expire_job_failure_keeps_parameters(monkeypatch):
    from app.worker import cron, tasks

    async def boom(older_than_hours=None):
        raise RuntimeError(f"mongo down during {older_than_hours}h sweep")

    monkeypatch.setattr(cron, "run_expire_pending_purchases", boom)
    with pytest.raises(RuntimeError):
        await tasks.expire_pending_purchases({"job_id": "job-3", "job_try": 1}, older_than_hours=6)
    failed = await FailedJob.find_one(FailedJob.job_id == "job-3")
    assert failed.job_name == "expire_pending_purchases"
    assert failed.kwargs == {"older_than_hours": 6}
    assert failed.reason == "mongo down during 6h sweep"


async def test_expire_job_custom_window(user, credit_tier):
    from app.models.credit_purchase import CreditPurchase, PaymentMethod, PurchaseStatus
    from app.services import purchases as purchases_service
    from app.worker import tasks

    out = await purchases_service.initiate_purchase(user.id, credit_tier.id, PaymentMethod.CARD)
    await CreditPurchase.get_motor_collection().update_one(
        {"_id": out.purchase.id}, {"$set": {"created_at": datetime.utcnow() - timedelta(hours=2)}}
    )
    assert await tasks.expire_pending_purchases({"job_id": "job-4"}) == {"expired": 0}
    assert await tasks.expire_pending_purchases({"job_id": "job-5"}, older_than_hours=1) == {"expired": 1}
    assert (await CreditPurchase.get(out.purchase.id)).status == PurchaseStatus.FAILED


async def test_reconcile_job_returns_summary(user):
    from app.worker import tasks
    await grant_credits(user.id, 10)
    out = await tasks.reconcile_credit_ledger({"job_id": "job-2"})
    assert out["users_checked"] == 1
    assert out["discrepancy_count"] == 0
