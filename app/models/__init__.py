from app.models.user import User
from app.models.credit_balance import CreditBalance
from app.models.credit_transaction import CreditTransaction, ReferenceType, TransactionType
from app.models.credit_purchase import CreditPurchase, PaymentMethod, PurchaseStatus
from app.models.pricing_tier import PricingTier, TierKind
from app.models.listing import Listing
from app.models.reconciliation_report import ReconciliationDiscrepancy, ReconciliationReport
from app.models.audit_log import AuditEvent, AuditLog
from app.models.failed_job import FailedJob

__all__ = [
    "User",
    "CreditBalance",
    "CreditTransaction",
    "TransactionType",
    "ReferenceType",
    "CreditPurchase",
    "PurchaseStatus",
    "PaymentMethod",
    "PricingTier",
    "TierKind",
    "Listing",
    "ReconciliationReport",
    "ReconciliationDiscrepancy",
    "AuditEvent",
    "AuditLog",
    "FailedJob",
]
