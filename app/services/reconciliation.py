"""Ledger reconciliation: stored balance vs. sum of each user's transactions.

Detection only. Balances are never rewritten here; a mismatch is reported and,
once seen on two consecutive runs, escalated to operators. No user lock is
taken, so a write racing the scan can produce a one-off false positive.
"""

from datetime import datetime

from app.core.audit import log_event
from app.core.logging import get_logger
from app.models.audit_log import AuditEvent
from app.models.credit_balance import CreditBalance
from app.models.credit_transaction import CreditTransaction
from app.models.reconciliation_report import ReconciliationDiscrepancy, ReconciliationReport

log = get_logger(__name__)


async def _ledger_totals() -> dict[str, tuple[int, int]]:
    """user_id -> (sum of amounts, transaction count)."""
    rows = await CreditTransaction.aggregate(
        [{"$group": {"_id": "$user_id", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}}]
    ).to_list()
    return {str(row["_id"]): (row["total"], row["count"]) for row in rows}


async def _stored_balances() -> dict[str, int]:
    out = {}
    async for doc in CreditBalance.get_motor_collection().find({}, {"user_id": 1, "balance": 1}):
        out[str(doc["user_id"])] = doc.get("balance", 0)
    return out


async def latest_report() -> ReconciliationReport | None:
    return await ReconciliationReport.find_all().sort("-started_at", "-_id").first_or_none()


async def run_reconciliation() -> ReconciliationReport:
    started_at = datetime.utcnow()
    previous = await latest_report()
    previously_flagged = {d.user_id for d in previous.discrepancies} if previous else set()

    totals = await _ledger_totals()
    stored = await _stored_balances()
    user_ids = sorted(set(totals) | set(stored))
    discrepancies = []
    for user_id in user_ids:
        ledger_balance, count = totals.get(user_id, (0, 0))
        stored_balance = stored.get(user_id, 0)
        if stored_balance == ledger_balance and stored_balance >= 0:
            continue
        discrepancies.append(
            ReconciliationDiscrepancy(
                user_id=user_id,
                stored_balance=stored_balance,
                ledger_balance=ledger_balance,
                difference=stored_balance - ledger_balance,
                transaction_count=count,
                confirmed=user_id in previously_flagged,
            )
        )

    report = ReconciliationReport(
        started_at=started_at,
        finished_at=datetime.utcnow(),
        users_checked=len(user_ids),
        transactions_checked=sum(count for _, count in totals.values()),
        discrepancy_count=len(discrepancies),
        discrepancies=discrepancies,
    )
    await report.insert()

    for d in discrepancies:
        if d.confirmed:
            log.error("reconciliation_discrepancy", **d.model_dump())
            await log_event(
                d.user_id,
                AuditEvent.RECONCILIATION_DISCREPANCY,
                "credit_balance",
                d.user_id,
                {**d.model_dump(), "report_id": str(report.id)},
            )
        else:
            log.warning("reconciliation_suspect", **d.model_dump())
    log.info(
        "reconciliation_finished",
        report_id=str(report.id),
        users_checked=report.users_checked,
        transactions_checked=report.transactions_checked,
        discrepancy_count=report.discrepancy_count,
        confirmed=sum(1 for d in discrepancies if d.confirmed),
    )
    return report


def report_to_dict(r: ReconciliationReport) -> dict:
    return {
        "id": str(r.id),
        "started_at": r.started_at.isoformat(),
        "finished_at": r.finished_at.isoformat() if r.finished_at else None,
        "users_checked": r.users_checked,
        "transactions_checked": r.transactions_checked,
        "discrepancy_count": r.discrepancy_count,
        "discrepancies": [d.model_dump() for d in r.discrepancies],
    }
