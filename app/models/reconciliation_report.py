from datetime import datetime

from beanie import Document
from pydantic import BaseModel, Field


class ReconciliationDiscrepancy(BaseModel):
    user_id: str
    stored_balance: int
    ledger_balance: int
    difference: int  # stored - ledger
    transaction_count: int = 0
    confirmed: bool = False  # also seen on the previous run


class ReconciliationReport(Document):
    started_at: datetime
    finished_at: datetime | None = None
    users_checked: int = 0
    transactions_checked: int = 0
    discrepancy_count: int = 0
    discrepancies: list[ReconciliationDiscrepancy] = Field(default_factory=list)

    class Settings:
        name = "reconciliation_reports"
        indexes = [[("started_at", -1)]]
