"""FightOrderAction model: which exchange orders were placed for which fight."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class FightOrderAction(SQLModel, table=True):
    __tablename__ = "fight_order_action"

    id: int | None = Field(default=None, primary_key=True)
    fight_id: int = Field(foreign_key="fight.id", index=True)
    user_id: str = Field(index=True)
    exchange_order_id: str = Field(index=True)
    symbol: str
    action_type: str  # "MARKET_ORDER", "LIMIT_ORDER", "STOP_ORDER", "CANCEL"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
