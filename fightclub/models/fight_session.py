"""FightSession model: connection evidence (IP / user agent) for anti-cheat."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class FightSession(SQLModel, table=True):
    __tablename__ = "fight_session"

    id: int | None = Field(default=None, primary_key=True)
    fight_id: int = Field(foreign_key="fight.id", index=True)
    user_id: str = Field(index=True)
    ip_address: str = Field(index=True)
    user_agent: str | None = None
    session_type: str  # "join" or "trade"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
