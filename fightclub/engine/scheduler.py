"""APScheduler integration for FastAPI.

Two kinds of jobs drive settlement:
- fight_<id>: one-shot DateTrigger at the fight's end time (realtime trigger)
- reconcile: IntervalTrigger safety net for fights the realtime trigger missed

Both go through SettlementOrchestrator, so the settlement lock decides who wins.
"""

import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from fightclub.config import Settings, settings
from fightclub.engine.reconcile import reconcile_fights
from fightclub.engine.settlement import SettlementOrchestrator
from fightclub.models.fight import Fight, FightStatus
from fightclub.services.settlement_lock import PREFIX_JOB_RECONCILE, PREFIX_REALTIME, generate_process_id
from fightclub.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "reconcile"


def _job_id(fight_id: int) -> str:
    return f"fight_{fight_id}"


class SettlementScheduler:
    def __init__(self, engine: Engine, orchestrator: SettlementOrchestrator, config: Settings = settings):
        self.engine = engine
        self.orchestrator = orchestrator
        self.config = config
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        instance_id = config.instance_id or None
        self.realtime_process_id = generate_process_id(PREFIX_REALTIME, instance_id)
        self.reconcile_process_id = generate_process_id(PREFIX_JOB_RECONCILE, instance_id)

    async def _end_fight(self, fight_id: int):
        logger.info(f"[fight_{fight_id}] End time reached, settling")
        try:
            await self.orchestrator.settle_fight(fight_id, self.realtime_process_id)
        except Exception as e:
            # The reconcile job retries once the buffer has passed
            logger.error(f"[fight_{fight_id}] Realtime settlement failed: {e}", exc_info=True)

    async def _reconcile(self) -> dict:
        return await reconcile_fights(
            self.engine,
            self.orchestrator,
            self.reconcile_process_id,
            self.config.reconcile_buffer_seconds,
        )

    def schedule_fight_end(self, fight_id: int, end_time: datetime):
        """Add or replace the end-of-fight job for a LIVE fight."""
        run_date = max(end_time, utcnow())
        self.scheduler.add_job(
            self._end_fight,
            trigger=DateTrigger(run_date=run_date),
            args=[fight_id],
            id=_job_id(fight_id),
            name=f"End fight {fight_id}",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=60,
        )
        logger.info(f"Scheduled end of fight {fight_id} at {run_date.isoformat()}")

    def cancel_fight_end(self, fight_id: int):
        job_id = _job_id(fight_id)
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)
            logger.info(f"Removed end job for fight {fight_id}")

    def start(self):
        """Start the scheduler, scheduling every LIVE fight plus the reconcile job."""
        with Session(self.engine) as session:
            fights = session.exec(
                select(Fight).where(Fight.status == FightStatus.LIVE)
            ).all()
        for fight in fights:
            if fight.end_time is not None:
                self.schedule_fight_end(fight.id, fight.end_time)

        self.scheduler.add_job(
            self._reconcile,
            trigger=IntervalTrigger(seconds=self.config.reconcile_interval_seconds),
            id=RECONCILE_JOB_ID,
            name="Reconcile overdue fights",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def get_status(self) -> dict:
        """Return current scheduler state for the API."""
        jobs = self.scheduler.get_jobs()
        return {
            "running": self.scheduler.running,
            "job_count": len(jobs),
            "realtime_process_id": self.realtime_process_id,
            "reconcile_process_id": self.reconcile_process_id,
            "jobs": [
                {
                    "id": j.id,
                    "name": j.name,
                    "next_run": str(j.next_run_time) if getattr(j, "next_run_time", None) else None,
                    "trigger": str(j.trigger),
                }
                for j in jobs
            ],
        }
