"""Tests for end-to-end fight settlement."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from fightclub.engine.scoring import ScoringError
from fightclub.engine.settlement import SettlementOrchestrator
from fightclub.models.fight import FightStatus
from fightclub.services.anti_cheat import AntiCheatService, RuleCode
from fightclub.services.settlement_lock import acquire_settlement_lock

from conftest import add_trade, get_fight, get_participant, make_fight, set_participant


@pytest.fixture
def orchestrator(engine):
    return SettlementOrchestrator(engine, AntiCheatService(engine))


def _traded_fight(engine, **kwargs):
    """alice closes +10 (fees 1), bob closes -10."""
    fight_id = make_fight(engine, **kwargs)
    add_trade(engine, fight_id, "alice", "BUY", 0.01, 50000.0, fee=0.5)
    add_trade(engine, fight_id, "alice", "SELL", 0.01, 51000.0, pnl=10.0, fee=0.5)
    add_trade(engine, fight_id, "bob", "BUY", 0.01, 50000.0)
    add_trade(engine, fight_id, "bob", "SELL", 0.01, 49000.0, pnl=-10.0)
    return fight_id


@pytest.mark.asyncio
async def test_clean_fight_finishes_with_score_winner(engine, orchestrator):
    fight_id = _traded_fight(engine)
    outcome = await orchestrator.settle_fight(fight_id, "realtime-1")

    assert outcome.status == FightStatus.FINISHED
    assert outcome.winner_id == "alice"
    assert outcome.is_draw is False
    assert outcome.scores["alice"].score_usdc == pytest.approx(9.0)
    assert outcome.scores["bob"].score_usdc == pytest.approx(-10.0)

    fight = get_fight(engine, fight_id)
    assert fight.status == FightStatus.FINISHED
    assert fight.winner_id == "alice"
    assert fight.ended_at is not None
    assert fight.settling_by is None

    alice = get_participant(engine, fight_id, "alice")
    assert alice.final_score_usdc == pytest.approx(9.0)
    assert alice.final_pnl_percent == pytest.approx(9.0)
    assert alice.trades_count == 2


@pytest.mark.asyncio
async def test_open_positions_do_not_score(engine, orchestrator):
    fight_id = make_fight(engine)
    add_trade(engine, fight_id, "alice", "BUY", 0.01, 50000.0)
    add_trade(engine, fight_id, "bob", "SELL", 0.01, 50000.0)
    add_trade(engine, fight_id, "bob", "BUY", 0.005, 49000.0, pnl=5.0)
    outcome = await orchestrator.settle_fight(fight_id, "realtime-1")
    assert outcome.scores["alice"].score_usdc == 0.0
    assert outcome.winner_id == "bob"


@pytest.mark.asyncio
async def test_settled_fight_is_not_settled_twice(engine, orchestrator):
    fight_id = _traded_fight(engine)
    assert await orchestrator.settle_fight(fight_id, "realtime-1") is not None
    assert await orchestrator.settle_fight(fight_id, "job-reconcile-1") is None


@pytest.mark.asyncio
async def test_locked_fight_is_skipped(engine, orchestrator, caplog):
    fight_id = _traded_fight(engine)
    acquire_settlement_lock(engine, fight_id, "realtime-1")
    with caplog.at_level(logging.INFO):
        assert await orchestrator.settle_fight(fight_id, "job-reconcile-1") is None
    assert "held by realtime-1" in caplog.text
    fight = get_fight(engine, fight_id)
    assert fight.status == FightStatus.LIVE
    assert fight.settling_by == "realtime-1"


@pytest.mark.asyncio
async def test_concurrent_settlement_has_one_winner(engine, orchestrator):
    fight_id = _traded_fight(engine)
    outcomes = await asyncio.gather(
        orchestrator.settle_fight(fight_id, "realtime-1"),
        orchestrator.settle_fight(fight_id, "job-reconcile-1"),
    )
    assert sum(o is not None for o in outcomes) == 1


@pytest.mark.asyncio
async def test_zero_trade_fight_is_no_contest(engine, orchestrator):
    fight_id = make_fight(engine)
    outcome = await orchestrator.settle_fight(fight_id, "realtime-1")
    assert outcome.status == FightStatus.NO_CONTEST
    assert outcome.winner_id is None
    assert RuleCode.ZERO_ZERO in {v.rule_code for v in outcome.violations}
    assert get_fight(engine, fight_id).status == FightStatus.NO_CONTEST


@pytest.mark.asyncio
async def test_external_trader_loses_even_with_better_score(engine, orchestrator):
    fight_id = _traded_fight(engine)
    set_participant(engine, fight_id, "alice", external_trades_detected=True)
    outcome = await orchestrator.settle_fight(fight_id, "realtime-1")
    assert outcome.status == FightStatus.FINISHED
    assert outcome.winner_id == "bob"
    assert get_fight(engine, fight_id).winner_id == "bob"


@pytest.mark.asyncio
async def test_single_participant_has_no_winner(engine, orchestrator):
    fight_id = make_fight(engine, user_b=None)
    add_trade(engine, fight_id, "alice", "BUY", 0.01, 50000.0)
    outcome = await orchestrator.settle_fight(fight_id, "realtime-1")
    assert outcome.status == FightStatus.FINISHED
    assert outcome.winner_id is None
    assert outcome.is_draw is False
    assert get_participant(engine, fight_id, "alice").final_score_usdc == 0.0


@pytest.mark.asyncio
async def test_anti_cheat_failure_settles_on_score(engine, caplog):
    anti_cheat = AsyncMock(spec=AntiCheatService)
    anti_cheat.settle_fight_with_anti_cheat.side_effect = RuntimeError("validator crashed")
    orchestrator = SettlementOrchestrator(engine, anti_cheat)
    fight_id = _traded_fight(engine)

    with caplog.at_level(logging.ERROR):
        outcome = await orchestrator.settle_fight(fight_id, "realtime-1")
    assert outcome.status == FightStatus.FINISHED
    assert outcome.winner_id == "alice"
    assert "Anti-cheat failed" in caplog.text


@pytest.mark.asyncio
async def test_lock_released_when_scoring_fails(engine, orchestrator):
    fight_id = _traded_fight(engine, stake=0.0)
    with pytest.raises(ScoringError):
        await orchestrator.settle_fight(fight_id, "realtime-1")
    fight = get_fight(engine, fight_id)
    assert fight.status == FightStatus.LIVE
    assert fight.settling_by is None
