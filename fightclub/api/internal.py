"""Internal API, called by the realtime engine, jobs and the web app's order route."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from fightclub.api.deps import (
    get_anti_cheat,
    get_orchestrator,
    get_scheduler,
    get_stake_validator,
    get_trade_recorder,
    require_internal_key,
)
from fightclub.config import settings
from fightclub.database import get_session
from fightclub.engine.scheduler import SettlementScheduler
from fightclub.engine.settlement import SettlementOrchestrator
from fightclub.models.fight import Fight, FightStatus
from fightclub.schemas.fight import (
    AntiCheatSettleRequest,
    AntiCheatSettleResponse,
    FightSessionRequest,
    FightTradeRead,
    MatchmakingCheckResponse,
    OrderActionRequest,
    RecordFillRequest,
    SettleFightResponse,
    ValidateOrderRequest,
    ValidateOrderResponse,
    ViolationSummary,
)
from fightclub.services.anti_cheat import AntiCheatService, extract_ip_address, extract_user_agent
from fightclub.services.exchange_client import ExchangeError
from fightclub.services.settlement_lock import generate_process_id
from fightclub.services.stake_limit import StakeLimitExceeded, StakeLimitValidator
from fightclub.services.trade_recorder import TradeRecorder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/internal", tags=["internal"], dependencies=[Depends(require_internal_key)])


@router.post("/settle/{fight_id}", response_model=SettleFightResponse)
async def settle_fight(fight_id: int, orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    """Settle a LIVE fight now instead of waiting for its end job."""
    process_id = generate_process_id("manual", settings.instance_id or None)
    outcome = await orchestrator.settle_fight(fight_id, process_id)
    if outcome is None:
        return SettleFightResponse(settled=False, fight_id=fight_id)
    return SettleFightResponse(
        settled=True,
        fight_id=fight_id,
        status=outcome.status.value,
        winner_id=outcome.winner_id,
        is_draw=outcome.is_draw,
        scores={uid: s.score_usdc for uid, s in outcome.scores.items()},
        violations=[v.rule_code.value for v in outcome.violations],
    )


@router.post("/anti-cheat/settle", response_model=AntiCheatSettleResponse)
async def anti_cheat_settle(body: AntiCheatSettleRequest, anti_cheat: AntiCheatService = Depends(get_anti_cheat)):
    """Validate a fight and return the adjudicated status / winner."""
    try:
        result = await anti_cheat.settle_fight_with_anti_cheat(
            body.fight_id, body.determined_winner_id, body.is_draw
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return AntiCheatSettleResponse(
        final_status=result.final_status.value,
        winner_id=result.winner_id,
        is_draw=result.is_draw,
        decided_by=result.decided_by,
        violations=[
            ViolationSummary(
                rule_code=v.rule_code.value,
                rule_name=v.rule_name,
                message=v.message,
                metadata=v.metadata,
            )
            for v in result.violations
        ],
    )


@router.post("/orders/validate", response_model=ValidateOrderResponse)
async def validate_order(body: ValidateOrderRequest, validator: StakeLimitValidator = Depends(get_stake_validator)):
    """Pre-trade stake check. 400 with code STAKE_LIMIT_EXCEEDED when the order does not fit."""
    try:
        result = await validator.validate_order(
            body.account,
            body.symbol,
            body.amount,
            body.price,
            body.order_type,
            body.reduce_only,
            body.fight_id,
        )
    except StakeLimitExceeded as e:
        return JSONResponse(
            status_code=400,
            content={"error": str(e), "code": e.code, "details": e.details},
        )
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ValidateOrderResponse(
        in_fight=result.in_fight,
        fight_id=result.fight_id,
        participant_id=result.participant_id,
    )


@router.get("/fights/{fight_id}/stake")
async def stake_info(fight_id: int, user_id: str, validator: StakeLimitValidator = Depends(get_stake_validator)):
    info = await validator.stake_info(user_id, fight_id)
    if info is None:
        raise HTTPException(status_code=404, detail="User not in a LIVE fight with this id")
    return info


@router.post("/fights/{fight_id}/trades")
def record_fill(fight_id: int, body: RecordFillRequest, recorder: TradeRecorder = Depends(get_trade_recorder)):
    """Record a confirmed fill; only the fight-relevant part is stored."""
    try:
        trade = recorder.record_fill(fight_id=fight_id, **body.model_dump())
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "recorded": trade is not None,
        "trade": FightTradeRead.model_validate(trade) if trade is not None else None,
    }


@router.post("/fights/{fight_id}/orders", status_code=201)
def record_order_action(
    fight_id: int,
    body: OrderActionRequest,
    recorder: TradeRecorder = Depends(get_trade_recorder),
):
    try:
        action = recorder.record_order_action(fight_id=fight_id, **body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"id": action.id, "exchange_order_id": action.exchange_order_id}


@router.post("/fights/{fight_id}/sessions", status_code=201)
def record_fight_session(
    fight_id: int,
    body: FightSessionRequest,
    request: Request,
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
):
    """Store the caller's IP / user agent for the same-IP rule."""
    try:
        record = anti_cheat.record_fight_session(
            fight_id,
            body.user_id,
            extract_ip_address(request.headers),
            extract_user_agent(request.headers),
            body.session_type,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"id": record.id, "ip_address": record.ip_address}


@router.post("/fights/{fight_id}/schedule")
def schedule_fight_end(
    fight_id: int,
    session: Session = Depends(get_session),
    scheduler: SettlementScheduler = Depends(get_scheduler),
):
    """Register the end-of-fight job once a fight goes LIVE."""
    fight = session.get(Fight, fight_id)
    if not fight:
        raise HTTPException(status_code=404, detail="Fight not found")
    if fight.status != FightStatus.LIVE or fight.end_time is None:
        raise HTTPException(status_code=409, detail=f"Fight is {fight.status.value}, not LIVE")
    scheduler.schedule_fight_end(fight.id, fight.end_time)
    return {"fight_id": fight.id, "end_time": fight.end_time.isoformat()}


@router.get("/matchmaking/check", response_model=MatchmakingCheckResponse)
def matchmaking_check(user_a: str, user_b: str, anti_cheat: AntiCheatService = Depends(get_anti_cheat)):
    result = anti_cheat.can_users_match(user_a, user_b)
    return MatchmakingCheckResponse(
        can_match=result.can_match,
        reason=result.reason,
        matchup_count=result.matchup_count,
    )
