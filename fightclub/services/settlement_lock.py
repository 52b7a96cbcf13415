"""Fight settlement lock.

Keeps the realtime end-of-fight trigger and the reconcile job from settling the
same fight twice. The lock lives on the fight row itself (settling_at,
settling_by); no Redis or other lock service is involved.

Acquisition happens inside one transaction that row-locks the fight with
SELECT ... FOR UPDATE, so two concurrent callers cannot both see the lock as
free. A conditional "UPDATE ... WHERE settling_at IS NULL" alone would race.

A lock older than SETTLEMENT_LOCK_TIMEOUT is stale and can be taken over, so a
settler that crashed mid-way does not leave the fight stuck in LIVE.
"""

import logging
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from fightclub.models.fight import Fight, FightStatus
from fightclub.utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Must exceed the slowest anti-cheat run plus the reconcile job's 60s buffer
SETTLEMENT_LOCK_TIMEOUT = timedelta(minutes=5)

PREFIX_REALTIME = "realtime"
PREFIX_JOB_RECONCILE = "job-reconcile"


@dataclass
class AcquireLockResult:
    acquired: bool
    fight_status: FightStatus | None = None
    settling_by: str | None = None
    settling_at: datetime | None = None


@dataclass
class ReleaseLockResult:
    released: bool


def acquire_settlement_lock(
    engine: Engine,
    fight_id: int,
    process_id: str,
    now: datetime | None = None,
) -> AcquireLockResult:
    """Try to take the settlement lock for a LIVE fight.

    Returns acquired=False when the fight is missing, no longer LIVE, or locked
    by someone else within the timeout. Database errors also return
    acquired=False: settlement never proceeds when the lock state is unknown.
    """
    now = now or utcnow()
    stale_before = now - SETTLEMENT_LOCK_TIMEOUT
    logger.info(f"[SettlementLock] Acquiring lock for fight {fight_id} by {process_id}")

    try:
        with Session(engine) as session:
            fight = session.exec(
                select(Fight).where(Fight.id == fight_id).with_for_update()
            ).first()

            if fight is None:
                logger.info(f"[SettlementLock] Fight {fight_id} not found")
                return AcquireLockResult(acquired=False)

            settling_at = ensure_utc(fight.settling_at)
            if fight.status != FightStatus.LIVE:
                logger.info(f"[SettlementLock] Fight {fight_id} not LIVE (status: {fight.status.value})")
                return AcquireLockResult(
                    acquired=False,
                    fight_status=fight.status,
                    settling_by=fight.settling_by,
                    settling_at=settling_at,
                )

            if settling_at is not None and settling_at >= stale_before:
                logger.info(
                    f"[SettlementLock] Fight {fight_id} lock held by {fight.settling_by} "
                    f"(acquired at {settling_at.isoformat()})"
                )
                return AcquireLockResult(
                    acquired=False,
                    fight_status=fight.status,
                    settling_by=fight.settling_by,
                    settling_at=settling_at,
                )

            if settling_at is not None:
                logger.warning(
                    f"[SettlementLock] Taking over stale lock on fight {fight_id} "
                    f"from {fight.settling_by} (acquired at {settling_at.isoformat()})"
                )

            fight.settling_at = now
            fight.settling_by = process_id
            session.add(fight)
            session.commit()

        logger.info(f"[SettlementLock] Lock acquired for fight {fight_id} by {process_id}")
        return AcquireLockResult(acquired=True, fight_status=FightStatus.LIVE, settling_by=process_id, settling_at=now)
    except SQLAlchemyError as e:
        logger.error(f"[SettlementLock] Failed to acquire lock for fight {fight_id}: {e}")
        return AcquireLockResult(acquired=False)


def release_settlement_lock(engine: Engine, fight_id: int, process_id: str) -> ReleaseLockResult:
    """Clear the lock, but only if process_id still holds it."""
    try:
        with Session(engine) as session:
            result = session.execute(
                update(Fight)
                .where(Fight.id == fight_id, Fight.settling_by == process_id)
                .values(settling_at=None, settling_by=None)
            )
            session.commit()
        released = result.rowcount > 0
    except SQLAlchemyError as e:
        logger.error(f"[SettlementLock] Failed to release lock for fight {fight_id}: {e}")
        return ReleaseLockResult(released=False)

    if released:
        logger.info(f"[SettlementLock] Lock released for fight {fight_id} by {process_id}")
    else:
        logger.warning(f"[SettlementLock] Fight {fight_id} lock not held by {process_id}, nothing released")
    return ReleaseLockResult(released=released)


@contextmanager
def settlement_lock(engine: Engine, fight_id: int, process_id: str):
    """Acquire the lock for the duration of a with-block; always released on exit.

    Yields the AcquireLockResult. Callers check ``.acquired`` before settling.
    """
    result = acquire_settlement_lock(engine, fight_id, process_id)
    try:
        yield result
    finally:
        if result.acquired:
            release_settlement_lock(engine, fight_id, process_id)


def is_lock_expired(settling_at: datetime | None, now: datetime | None = None) -> bool:
    if settling_at is None:
        return True
    now = now or utcnow()
    return now - ensure_utc(settling_at) > SETTLEMENT_LOCK_TIMEOUT


def generate_process_id(prefix: str, instance_id: str | None = None) -> str:
    """e.g. "realtime-api-1" or "job-reconcile-1718000000000-k3j9x2a"."""
    ident = instance_id or f"{int(time.time() * 1000)}-{secrets.token_hex(4)[:7]}"
    return f"{prefix}-{ident}"
