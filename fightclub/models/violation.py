"""AntiCheatViolation model: append-only audit log of rule failures."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class AntiCheatViolation(SQLModel, table=True):
    __tablename__ = "anti_cheat_violation"

    id: int | None = Field(default=None, primary_key=True)
    fight_id: int = Field(foreign_key="fight.id", index=True)
    rule_code: str = Field(index=True)  # ZERO_ZERO, MIN_VOLUME, REPEATED_MATCHUP, SAME_IP_PATTERN, EXTERNAL_TRADES
    rule_name: str
    rule_message: str
    metadata_json: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    action_taken: str  # "NO_CONTEST", "FLAGGED", "RESTORED"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
