"""Admin API: anti-cheat audit trail and overrides."""

from fastapi import APIRouter, Depends, HTTPException

from fightclub.api.deps import get_anti_cheat, require_internal_key
from fightclub.schemas.fight import RestoreFightRequest, ViolationRead
from fightclub.services.anti_cheat import AntiCheatService

router = APIRouter(prefix="/api/admin/anti-cheat", tags=["admin"], dependencies=[Depends(require_internal_key)])


@router.get("/violations", response_model=list[ViolationRead])
def list_violations(
    fight_id: int | None = None,
    rule_code: str | None = None,
    limit: int = 50,
    offset: int = 0,
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
):
    return anti_cheat.list_violations(fight_id=fight_id, rule_code=rule_code, limit=min(limit, 500), offset=offset)


@router.get("/stats")
def violation_stats(anti_cheat: AntiCheatService = Depends(get_anti_cheat)):
    return anti_cheat.violation_stats()


@router.get("/suspicious-users")
def suspicious_users(
    min_violations: int = 2,
    limit: int = 20,
    offset: int = 0,
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
):
    return anti_cheat.suspicious_users(
        min_violations=max(min_violations, 1), limit=min(limit, 100), offset=max(offset, 0)
    )


@router.post("/fights/{fight_id}/restore")
def restore_fight(
    fight_id: int,
    body: RestoreFightRequest,
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
):
    """Turn a NO_CONTEST fight back into FINISHED; the result defaults to the final scores."""
    try:
        fight = anti_cheat.restore_fight(fight_id, body.winner_id, body.is_draw, body.reason)
    except LookupError:
        raise HTTPException(status_code=404, detail="Fight not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "fight_id": fight.id,
        "status": fight.status.value,
        "winner_id": fight.winner_id,
        "is_draw": fight.is_draw,
    }
