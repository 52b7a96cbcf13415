"""System API: health check and scheduler status."""

from fastapi import APIRouter, Depends

from fightclub.api.deps import get_scheduler, require_internal_key
from fightclub.engine.scheduler import SettlementScheduler

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(require_internal_key)])
def scheduler_status(scheduler: SettlementScheduler = Depends(get_scheduler)):
    """Current scheduler state with job details."""
    return scheduler.get_status()
