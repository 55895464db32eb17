import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.config import get_settings
from app.models.audit_log import AuditLog
from app.models.credit_balance import CreditBalance
from app.models.credit_purchase import CreditPurchase
from app.models.credit_transaction import CreditTransaction
from app.models.failed_job import FailedJob
from app.models.listing import Listing
from app.models.pricing_tier import PricingTier
from app.models.reconciliation_report import ReconciliationReport
from app.models.user import User

DOCUMENT_MODELS = [
    User,
    CreditBalance,
    CreditTransaction,
    CreditPurchase,
    PricingTier,
    Listing,
    ReconciliationReport,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database: AsyncIOMotorDatabase | None = None) -> None:
    """Register document models. Tests pass an in-memory database."""
    if database is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
