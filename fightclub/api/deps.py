"""Shared API dependencies."""

import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from fightclub.config import settings
from fightclub.engine.settlement import SettlementOrchestrator
from fightclub.engine.scheduler import SettlementScheduler
from fightclub.services.anti_cheat import AntiCheatService
from fightclub.services.stake_limit import StakeLimitValidator
from fightclub.services.trade_recorder import TradeRecorder

internal_key_scheme = APIKeyHeader(name="X-Internal-Key", auto_error=False)


def require_internal_key(api_key: str | None = Depends(internal_key_scheme)) -> None:
    """Reject calls that do not carry the shared internal API key."""
    if not api_key or not secrets.compare_digest(api_key, settings.internal_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
        )


def get_anti_cheat(request: Request) -> AntiCheatService:
    return request.app.state.anti_cheat


def get_stake_validator(request: Request) -> StakeLimitValidator:
    return request.app.state.stake_validator


def get_trade_recorder(request: Request) -> TradeRecorder:
    return request.app.state.trade_recorder


def get_orchestrator(request: Request) -> SettlementOrchestrator:
    return request.app.state.orchestrator


def get_scheduler(request: Request) -> SettlementScheduler:
    return request.app.state.scheduler
