"""Reconcile job: settles LIVE fights the realtime trigger missed.

Runs on an interval. A fight is only picked up once it is past its end time
plus a grace buffer, so the realtime trigger normally gets there first.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from fightclub.engine.settlement import SettlementOrchestrator
from fightclub.models.fight import Fight, FightStatus
from fightclub.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


def find_overdue_fights(engine: Engine, buffer_seconds: int, now: datetime | None = None) -> list[int]:
    """Ids of LIVE fights whose end time + buffer has passed."""
    now = now or utcnow()
    with Session(engine) as session:
        fights = session.exec(
            select(Fight).where(Fight.status == FightStatus.LIVE, Fight.started_at != None)  # noqa: E711
        ).all()
    cutoff = timedelta(seconds=buffer_seconds)
    return [f.id for f in fights if f.end_time is not None and now > f.end_time + cutoff]


async def reconcile_fights(
    engine: Engine,
    orchestrator: SettlementOrchestrator,
    process_id: str,
    buffer_seconds: int,
    now: datetime | None = None,
) -> dict:
    """Settle every overdue fight. Returns counts for the run."""
    overdue = find_overdue_fights(engine, buffer_seconds, now)
    summary = {"checked": len(overdue), "settled": 0, "skipped": 0, "failed": 0}
    if not overdue:
        return summary

    logger.warning(f"[reconcile] {len(overdue)} overdue LIVE fight(s): {overdue}")
    for fight_id in overdue:
        try:
            outcome = await orchestrator.settle_fight(fight_id, process_id)
        except Exception as e:
            summary["failed"] += 1
            logger.error(f"[reconcile] Fight {fight_id} failed: {e}", exc_info=True)
            continue
        if outcome is None:
            summary["skipped"] += 1
        else:
            summary["settled"] += 1

    logger.info(
        f"[reconcile] Done: {summary['settled']} settled, {summary['skipped']} skipped, "
        f"{summary['failed']} failed"
    )
    return summary
