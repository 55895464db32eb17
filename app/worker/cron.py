"""Cron bodies: ledger reconciliation and expiry of abandoned purchases."""

from datetime import timedelta

from app.core.logging import get_logger
from app.services.purchases import expire_pending_purchases
from app.services.reconciliation import run_reconciliation

log = get_logger(__name__)


async def run_reconcile_credit_ledger() -> dict:
    """Compare every stored balance with its transaction log; report only."""
    report = await run_reconciliation()
    return {
        "report_id": str(report.id),
        "users_checked": report.users_checked,
        "discrepancy_count": report.discrepancy_count,
    }


async def run_expire_pending_purchases(older_than_hours: int | None = None) -> dict:
    older_than = timedelta(hours=older_than_hours) if older_than_hours is not None else None
    expired = await expire_pending_purchases(older_than)
    if expired:
        log.info("expire_pending_purchases", expired=expired)
    return {"expired": expired}
