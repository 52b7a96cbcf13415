"""ExchangeAccount model: links an exchange account address to a platform user."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class ExchangeAccount(SQLModel, table=True):
    __tablename__ = "exchange_account"

    id: int | None = Field(default=None, primary_key=True)
    account_address: str = Field(unique=True, index=True)
    user_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
