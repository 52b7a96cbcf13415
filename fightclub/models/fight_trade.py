"""FightTrade model: immutable record of the fight-attributable part of a fill."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class FightTrade(SQLModel, table=True):
    __tablename__ = "fight_trade"

    id: int | None = Field(default=None, primary_key=True)
    fight_id: int = Field(foreign_key="fight.id", index=True)
    participant_user_id: str = Field(index=True)
    symbol: str
    side: str  # "BUY" or "SELL"
    amount: float
    price: float
    leverage: float | None = None
    fee: float = 0.0
    pnl: float = 0.0  # Realized PnL reported by the exchange, before fees
    exchange_order_id: str | None = None
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
