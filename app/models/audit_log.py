from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document
from pydantic import Field


class AuditEvent(str, Enum):
    PURCHASE_INITIATED = "purchase_initiated"
    PURCHASE_COMPLETED = "purchase_completed"
    PURCHASE_REJECTED = "purchase_rejected"
    PURCHASE_CANCELLED = "purchase_cancelled"
    PURCHASES_EXPIRED = "purchases_expired"
    # Needs a human: money may have moved without a matching purchase
    PURCHASE_NOT_FOUND = "purchase_not_found"
    PURCHASE_CONFIRMATION_CONFLICT = "purchase_confirmation_conflict"
    CREDITS_DEDUCTED = "credits_deducted"
    CREDITS_ADJUSTED = "credits_adjusted"
    CREDITS_REFUNDED = "credits_refunded"
    RECONCILIATION_DISCREPANCY = "reconciliation_discrepancy"


class AuditLog(Document):
    """Business event trail for support and reconciliation triage."""
    event_type: AuditEvent
    entity_type: str  # credit_purchase, credit_transaction, credit_balance
    entity_id: str | None = None
    user_id: str | None = None  # owner of the credits; None for system events
    actor_id: str | None = None  # admin acting on the user's credits
    correlation_id: str | None = None  # request id or ARQ job id
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
            [("event_type", 1), ("created_at", -1)],
        ]
