"""Fight model: one competitive session between two participants."""

from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlmodel import SQLModel, Field


class FightStatus(str, Enum):
    WAITING = "WAITING"
    LIVE = "LIVE"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"
    NO_CONTEST = "NO_CONTEST"


class Fight(SQLModel, table=True):
    __tablename__ = "fight"

    id: int | None = Field(default=None, primary_key=True)
    status: FightStatus = Field(default=FightStatus.WAITING, index=True)
    duration_minutes: int
    stake_usdc: float
    creator_id: str = Field(index=True)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    winner_id: str | None = None
    is_draw: bool = False

    # Settlement lock; both NULL when unlocked
    settling_at: datetime | None = None
    settling_by: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def end_time(self) -> datetime | None:
        if self.started_at is None:
            return None
        started = self.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return started + timedelta(minutes=self.duration_minutes)
