"""FightParticipant model: one user's membership in one fight."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON, UniqueConstraint


class FightParticipant(SQLModel, table=True):
    __tablename__ = "fight_participant"
    __table_args__ = (UniqueConstraint("fight_id", "user_id"),)

    id: int | None = Field(default=None, primary_key=True)
    fight_id: int = Field(foreign_key="fight.id", index=True)
    user_id: str = Field(index=True)
    slot: str  # "A" (creator) or "B"

    final_score_usdc: float | None = None
    final_pnl_percent: float | None = None
    trades_count: int = 0
    max_exposure_used: float = 0.0  # High-water mark, never decreases

    # Remaining pre-fight positions: [{"symbol": "BTC", "amount": 0.1}], signed (+long / -short).
    # Decremented as fight fills close them.
    initial_positions: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    # Set by the upstream fill matcher when trades were placed outside the platform
    external_trades_detected: bool = False
    external_trade_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))

    joined_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
