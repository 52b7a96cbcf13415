"""Pydantic schemas for the internal and admin fight API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ValidateOrderRequest(BaseModel):
    account: str = Field(min_length=1)
    symbol: str = Field(min_length=1, max_length=32)
    amount: float = Field(gt=0)
    price: float | None = Field(default=None, gt=0)
    order_type: str = "MARKET"
    reduce_only: bool = False
    fight_id: int | None = None

    @field_validator("order_type")
    @classmethod
    def _validate_order_type(cls, value: str) -> str:
        value = value.upper()
        if value not in ("MARKET", "LIMIT", "STOP"):
            raise ValueError("must be one of: MARKET, LIMIT, STOP")
        return value


class ValidateOrderResponse(BaseModel):
    allowed: bool = True
    in_fight: bool
    fight_id: int | None = None
    participant_id: int | None = None


class AntiCheatSettleRequest(BaseModel):
    fight_id: int
    determined_winner_id: str | None = None
    is_draw: bool = False


class ViolationSummary(BaseModel):
    rule_code: str
    rule_name: str
    message: str
    metadata: dict[str, Any] | None = None


class AntiCheatSettleResponse(BaseModel):
    success: bool = True
    final_status: str
    winner_id: str | None
    is_draw: bool
    decided_by: str
    violations: list[ViolationSummary] = []


class SettleFightResponse(BaseModel):
    settled: bool
    fight_id: int
    status: str | None = None
    winner_id: str | None = None
    is_draw: bool = False
    scores: dict[str, float] = {}
    violations: list[str] = []


class RecordFillRequest(BaseModel):
    user_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1, max_length=32)
    side: str
    amount: float = Field(gt=0)
    price: float = Field(gt=0)
    fee: float = 0.0
    pnl: float = 0.0
    leverage: float | None = Field(default=None, gt=0)
    exchange_order_id: str | None = None
    executed_at: datetime | None = None

    @field_validator("side")
    @classmethod
    def _validate_side(cls, value: str) -> str:
        value = value.upper()
        if value not in ("BUY", "SELL"):
            raise ValueError("must be BUY or SELL")
        return value


class FightTradeRead(BaseModel):
    id: int
    fight_id: int
    participant_user_id: str
    symbol: str
    side: str
    amount: float
    price: float
    leverage: float | None
    fee: float
    pnl: float
    exchange_order_id: str | None
    executed_at: datetime

    model_config = {"from_attributes": True}


class OrderActionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    exchange_order_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1, max_length=32)
    action_type: str


class FightSessionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    session_type: str = "join"


class MatchmakingCheckResponse(BaseModel):
    can_match: bool
    reason: str | None = None
    matchup_count: int | None = None


class RestoreFightRequest(BaseModel):
    winner_id: str | None = None
    is_draw: bool = False
    reason: str = Field(min_length=1, max_length=500)


class ViolationRead(BaseModel):
    id: int
    fight_id: int
    rule_code: str
    rule_name: str
    rule_message: str
    metadata_json: dict[str, Any] | None
    action_taken: str
    created_at: datetime

    model_config = {"from_attributes": True}
