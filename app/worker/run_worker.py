"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.worker.tasks import expire_pending_purchases, get_redis_settings, reconcile_credit_ledger, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [reconcile_credit_ledger, expire_pending_purchases]
    cron_jobs = [
        cron(reconcile_credit_ledger, hour={get_settings().reconciliation_hour}, minute={0}, unique=True),
        cron(expire_pending_purchases, minute={15}, unique=True),  # hourly at :15
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    settings = get_settings()
    configure_logging(debug=settings.debug)
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
