"""ARQ job definitions."""

import uuid
from typing import Any, Awaitable

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import bind_job, get_logger
from app.db.init import init_db

log = get_logger(__name__)


async def _run_with_dlq(
    ctx: dict[str, Any],
    job_name: str,
    coro: Awaitable[Any],
    job_kwargs: dict[str, Any] | None = None,
) -> Any:
    """Run coroutine; on exception persist to FailedJob (with the job's parameters) then re-raise."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    bind_job(job_name, job_id)
    log.info("job_start", job=job_name)
    try:
        result = await coro
    except Exception as e:
        from app.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            kwargs=job_kwargs or {},
            error_type=type(e).__name__,
            reason=str(e)[:2000],
            job_try=int(ctx.get("job_try") or 1),
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise
    log.info("job_done", job=job_name, result=result)
    return result


async def reconcile_credit_ledger(ctx: dict[str, Any]) -> Any:
    """Cron job: daily balance reconciliation."""
    from app.worker.cron import run_reconcile_credit_ledger
    return await _run_with_dlq(ctx, "reconcile_credit_ledger", run_reconcile_credit_ledger())


async def expire_pending_purchases(ctx: dict[str, Any], older_than_hours: int | None = None) -> Any:
    """Cron job: fail purchases nobody paid for. Enqueue with older_than_hours to sweep a custom window."""
    from app.worker.cron import run_expire_pending_purchases
    return await _run_with_dlq(
        ctx,
        "expire_pending_purchases",
        run_expire_pending_purchases(older_than_hours),
        {"older_than_hours": older_than_hours} if older_than_hours is not None else None,
    )


async def startup(ctx: dict) -> None:
    await init_db()


async def shutdown(ctx: dict) -> None:
    log.info("worker_shutdown")


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
