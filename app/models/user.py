from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Marketplace account, owned by the auth service; the ledger only reads it."""
    email: Indexed(str, unique=True)
    name: str = ""
    phone: str | None = None
    role: str = "user"  # "user" | "admin"
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
