import os
import uuid
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Settings are cached on first use: set test values before the app is imported
os.environ.setdefault("MONGODB_DB_NAME", "classifieds_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("PAYMENT_MERCHANT_NUMBER", "+256700000000")
os.environ.setdefault("LEDGER_LOCK_TIMEOUT_SECONDS", "2")
os.environ.setdefault("LEDGER_LOCK_POLL_INTERVAL_SECONDS", "0.005")
os.environ.setdefault("LEDGER_RETRY_MAX_WAIT_SECONDS", "0.05")


@pytest_asyncio.fixture(autouse=True)
async def db() -> AsyncGenerator[None, None]:
    """Fresh in-memory database per test."""
    from app.db.init import init_db
    client = AsyncMongoMockClient()
    await init_db(database=client[f"test_{uuid.uuid4().hex}"])
    yield


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def user():
    from app.models.user import User
    u = User(email=f"buyer-{uuid.uuid4().hex[:8]}@example.com", name="Buyer", phone="+256771234567")
    await u.insert()
    return u


@pytest_asyncio.fixture
async def admin():
    from app.models.user import User
    u = User(email=f"admin-{uuid.uuid4().hex[:8]}@example.com", name="Admin", role="admin")
    await u.insert()
    return u


@pytest_asyncio.fixture
async def credit_tier():
    """Credit package worth 100 credits (80 + 20 bonus)."""
    from app.models.pricing_tier import PricingTier, TierKind
    t = PricingTier(name="Starter", kind=TierKind.CREDIT_PACKAGE, credit_amount=80, bonus_credits=20, price=10000)
    await t.insert()
    return t


@pytest_asyncio.fixture
async def listing_tier():
    """Listing tier costing 30 credits."""
    from app.models.pricing_tier import PricingTier, TierKind
    t = PricingTier(name="Standard", kind=TierKind.LISTING, credits_cost=30, visibility_days=30)
    await t.insert()
    return t


def session_cookies(user) -> dict[str, str]:
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME
    return {SESSION_COOKIE_NAME: create_session_cookie({"user_id": str(user.id), "session_version": user.session_version})}


async def grant_credits(user_id, amount: int):
    """Seed a balance through the ledger (never by writing the balance directly)."""
    from app.models.credit_transaction import ReferenceType, TransactionType
    from app.services import credits as credits_service
    from app.services.locks import user_lock

    async with user_lock(user_id) as lease:
        before = await credits_service.get_balance(user_id)
        return await credits_service.append_transaction(
            lease,
            credits_service.NewTransaction(
                user_id=user_id,
                type=TransactionType.ADJUSTMENT,
                amount=amount,
                balance_before=before,
                reference_type=ReferenceType.ADMIN,
                description="test seed",
            ),
        )


async def ledger_sum(user_id) -> int:
    from app.models.credit_transaction import CreditTransaction
    entries = await CreditTransaction.find(CreditTransaction.user_id == user_id).to_list()
    return sum(e.amount for e in entries)
