"""Tests for the row-based settlement lock."""

import logging
import threading
from datetime import timedelta

from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from fightclub.models.fight import FightStatus
from fightclub.services.settlement_lock import (
    PREFIX_JOB_RECONCILE,
    PREFIX_REALTIME,
    SETTLEMENT_LOCK_TIMEOUT,
    acquire_settlement_lock,
    generate_process_id,
    is_lock_expired,
    release_settlement_lock,
    settlement_lock,
)
from fightclub.utils.timeutil import utcnow

from conftest import get_fight, make_fight


# ---------------------------------------------------------------------------
# 1. Acquire / release
# ---------------------------------------------------------------------------

def test_acquire_sets_lock_fields(engine):
    fight_id = make_fight(engine)
    result = acquire_settlement_lock(engine, fight_id, "realtime-1")
    assert result.acquired is True
    fight = get_fight(engine, fight_id)
    assert fight.settling_by == "realtime-1"
    assert fight.settling_at is not None


def test_second_caller_is_refused(engine):
    fight_id = make_fight(engine)
    assert acquire_settlement_lock(engine, fight_id, "realtime-1").acquired
    second = acquire_settlement_lock(engine, fight_id, "job-reconcile-1")
    assert second.acquired is False
    assert second.settling_by == "realtime-1"
    assert second.fight_status == FightStatus.LIVE


def test_missing_fight_not_acquired(engine):
    assert acquire_settlement_lock(engine, 999, "realtime-1").acquired is False


def test_finished_fight_not_acquired(engine):
    fight_id = make_fight(engine, status=FightStatus.FINISHED)
    result = acquire_settlement_lock(engine, fight_id, "realtime-1")
    assert result.acquired is False
    assert result.fight_status == FightStatus.FINISHED


def test_release_only_by_holder(engine):
    fight_id = make_fight(engine)
    acquire_settlement_lock(engine, fight_id, "realtime-1")
    assert release_settlement_lock(engine, fight_id, "job-reconcile-1").released is False
    assert get_fight(engine, fight_id).settling_by == "realtime-1"

    assert release_settlement_lock(engine, fight_id, "realtime-1").released is True
    fight = get_fight(engine, fight_id)
    assert fight.settling_by is None
    assert fight.settling_at is None


def test_reacquire_after_release(engine):
    fight_id = make_fight(engine)
    acquire_settlement_lock(engine, fight_id, "realtime-1")
    release_settlement_lock(engine, fight_id, "realtime-1")
    assert acquire_settlement_lock(engine, fight_id, "job-reconcile-1").acquired is True


# ---------------------------------------------------------------------------
# 2. Expiry
# ---------------------------------------------------------------------------

def test_stale_lock_is_taken_over(engine, caplog):
    fight_id = make_fight(engine)
    long_ago = utcnow() - SETTLEMENT_LOCK_TIMEOUT - timedelta(seconds=1)
    assert acquire_settlement_lock(engine, fight_id, "realtime-crashed", now=long_ago).acquired

    with caplog.at_level(logging.WARNING):
        result = acquire_settlement_lock(engine, fight_id, "job-reconcile-1")
    assert result.acquired is True
    assert get_fight(engine, fight_id).settling_by == "job-reconcile-1"
    assert "stale lock" in caplog.text


def test_fresh_lock_is_not_taken_over(engine):
    fight_id = make_fight(engine)
    recent = utcnow() - SETTLEMENT_LOCK_TIMEOUT + timedelta(seconds=30)
    acquire_settlement_lock(engine, fight_id, "realtime-1", now=recent)
    assert acquire_settlement_lock(engine, fight_id, "job-reconcile-1").acquired is False


def test_is_lock_expired():
    now = utcnow()
    assert is_lock_expired(None) is True
    assert is_lock_expired(now - timedelta(minutes=6), now=now) is True
    assert is_lock_expired(now - timedelta(minutes=4), now=now) is False
    # Naive timestamps (SQLite) are treated as UTC
    assert is_lock_expired((now - timedelta(minutes=1)).replace(tzinfo=None), now=now) is False


# ---------------------------------------------------------------------------
# 3. Mutual exclusion under concurrency
# ---------------------------------------------------------------------------

def test_concurrent_acquire_only_one_wins(engine):
    fight_id = make_fight(engine)
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def worker(n):
        barrier.wait()
        result = acquire_settlement_lock(engine, fight_id, f"worker-{n}")
        with lock:
            results.append(result.acquired)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert len(results) == 8


# ---------------------------------------------------------------------------
# 4. Fail-closed and scoped release
# ---------------------------------------------------------------------------

def test_database_error_means_not_acquired(engine, caplog):
    fight_id = make_fight(engine)
    with patch("fightclub.services.settlement_lock.Session") as mock_session:
        mock_session.return_value.__enter__.return_value.exec.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        with caplog.at_level(logging.ERROR):
            result = acquire_settlement_lock(engine, fight_id, "realtime-1")
    assert result.acquired is False
    assert "Failed to acquire lock" in caplog.text


def test_context_manager_releases_on_error(engine):
    fight_id = make_fight(engine)
    try:
        with settlement_lock(engine, fight_id, "realtime-1") as lock:
            assert lock.acquired
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert get_fight(engine, fight_id).settling_by is None


def test_context_manager_does_not_release_foreign_lock(engine):
    fight_id = make_fight(engine)
    acquire_settlement_lock(engine, fight_id, "realtime-1")
    with settlement_lock(engine, fight_id, "job-reconcile-1") as lock:
        assert lock.acquired is False
    assert get_fight(engine, fight_id).settling_by == "realtime-1"


def test_generate_process_id():
    assert generate_process_id(PREFIX_REALTIME, "api-1") == "realtime-api-1"
    generated = generate_process_id(PREFIX_JOB_RECONCILE)
    assert generated.startswith("job-reconcile-")
    assert generated != generate_process_id(PREFIX_JOB_RECONCILE)
