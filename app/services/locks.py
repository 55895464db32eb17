"""Per-user serialization of balance mutations.

A lease on the user's CreditBalance row acts as the row lock: acquiring it is
a single conditional update that succeeds only when the row is free or the
previous holder's lease has expired. Different users lock different rows and
never contend.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from beanie import PydanticObjectId
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import get_settings
from app.core.exceptions import ConcurrentModificationError, LockTimeoutError
from app.core.logging import get_logger
from app.models.credit_balance import CreditBalance
from app.services import credits as credits_service

log = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (LockTimeoutError, ConcurrentModificationError)


@dataclass(frozen=True)
class LedgerLease:
    user_id: PydanticObjectId
    token: str

    def guard(self) -> dict[str, Any]:
        """Filter matching the user's row only while this lease owns it."""
        return {"user_id": self.user_id, "lock_owner": self.token}


async def _try_acquire(user_id: PydanticObjectId, token: str, lease_seconds: float) -> bool:
    now = datetime.utcnow()
    result = await CreditBalance.get_motor_collection().update_one(
        {
            "user_id": user_id,
            "$or": [{"lock_owner": None}, {"lock_expires_at": {"$lt": now}}],
        },
        {"$set": {"lock_owner": token, "lock_expires_at": now + timedelta(seconds=lease_seconds)}},
    )
    return result.matched_count == 1


async def _release(lease: LedgerLease) -> None:
    result = await CreditBalance.get_motor_collection().update_one(
        lease.guard(),
        {"$set": {"lock_owner": None, "lock_expires_at": None}},
    )
    if result.matched_count != 1:
        # Lease expired and was taken over; writes made under it were already rejected.
        log.warning("ledger_lock_release_lost", user_id=str(lease.user_id))


@asynccontextmanager
async def user_lock(user_id: PydanticObjectId, timeout: float | None = None) -> AsyncIterator[LedgerLease]:
    """
    Exclusive critical section for one user's balance.
    Raises LockTimeoutError if the lease cannot be taken within timeout seconds.
    """
    settings = get_settings()
    timeout = settings.ledger_lock_timeout_seconds if timeout is None else timeout
    token = uuid.uuid4().hex
    await credits_service.ensure_credit_state(user_id)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await _try_acquire(user_id, token, settings.ledger_lock_lease_seconds):
        if loop.time() >= deadline:
            log.warning("ledger_lock_timeout", user_id=str(user_id), timeout=timeout)
            raise LockTimeoutError(str(user_id), timeout)
        await asyncio.sleep(settings.ledger_lock_poll_interval_seconds)
    lease = LedgerLease(user_id=user_id, token=token)
    log.debug("ledger_lock_acquired", user_id=str(user_id))
    try:
        yield lease
    finally:
        await _release(lease)


async def retry_on_contention(func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    """
    Run a whole critical section (lock, fresh read, write) again on lock timeout
    or lost lease. The failed attempt has written nothing, so rerunning is safe.
    """
    settings = get_settings()
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(settings.ledger_retry_attempts, 1)),
        wait=wait_exponential(multiplier=0.05, max=settings.ledger_retry_max_wait_seconds),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                log.info("ledger_retry", func=getattr(func, "__name__", str(func)), attempt=attempt.retry_state.attempt_number)
            return await func(*args, **kwargs)
