"""Tests for the per-fight stake limit on new orders."""

import logging
from unittest.mock import AsyncMock

import pytest

from fightclub.models.fight import FightStatus
from fightclub.services.exchange_client import ExchangeClient, ExchangeError
from fightclub.services.stake_limit import (
    StakeLimitExceeded,
    StakeLimitValidator,
    update_max_exposure_if_higher,
)

from conftest import add_account, add_order_action, add_trade, get_participant, make_fight, set_participant

ACCOUNT = "0xalice"


@pytest.fixture
def exchange():
    client = AsyncMock(spec=ExchangeClient)
    client.get_positions.return_value = []
    client.get_open_orders.return_value = []
    client.get_mark_price.return_value = 50000.0
    return client


@pytest.fixture
def validator(engine, exchange):
    add_account(engine, ACCOUNT, "alice")
    return StakeLimitValidator(engine, exchange)


def _order(validator, amount, price=None, order_type="LIMIT", reduce_only=False, fight_id=None):
    return validator.validate_order(ACCOUNT, "BTC", amount, price, order_type, reduce_only, fight_id)


# ---------------------------------------------------------------------------
# 1. Orders outside any restriction
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reduce_only_always_passes(engine, validator, exchange):
    make_fight(engine)
    result = await _order(validator, 100.0, price=50000.0, reduce_only=True)
    assert result.in_fight is False
    exchange.get_positions.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_account_passes(engine, exchange):
    make_fight(engine)
    validator = StakeLimitValidator(engine, exchange)
    result = await validator.validate_order("0xnobody", "BTC", 100.0, 50000.0, "LIMIT", False)
    assert result.in_fight is False


@pytest.mark.asyncio
async def test_user_without_live_fight_passes(engine, validator):
    make_fight(engine, status=FightStatus.FINISHED)
    result = await _order(validator, 100.0, price=50000.0)
    assert result.in_fight is False


# ---------------------------------------------------------------------------
# 2. High-water mark arithmetic
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_open_position_capital_can_be_reused(engine, validator):
    # stake 100, max used 80, position of 80 still open -> 100 available
    fight_id = make_fight(engine, stake=100.0)
    add_trade(engine, fight_id, "alice", "BUY", 0.001, 80000.0)
    set_participant(engine, fight_id, "alice", max_exposure_used=80.0)

    result = await _order(validator, 0.95, price=100.0)
    assert result.in_fight is True
    assert result.fight_id == fight_id


@pytest.mark.asyncio
async def test_closed_capital_is_spent(engine, validator):
    # stake 100, max used 80, everything closed -> 20 available
    fight_id = make_fight(engine, stake=100.0)
    add_trade(engine, fight_id, "alice", "BUY", 0.001, 80000.0)
    add_trade(engine, fight_id, "alice", "SELL", 0.001, 81000.0)
    set_participant(engine, fight_id, "alice", max_exposure_used=80.0)

    with pytest.raises(StakeLimitExceeded) as exc_info:
        await _order(validator, 0.25, price=100.0)
    assert exc_info.value.code == "STAKE_LIMIT_EXCEEDED"
    assert exc_info.value.details["available"] == pytest.approx(20.0)
    assert exc_info.value.details["order_notional"] == pytest.approx(25.0)

    assert (await _order(validator, 0.125, price=100.0)).in_fight is True


@pytest.mark.asyncio
async def test_market_order_uses_mark_price(engine, validator, exchange):
    make_fight(engine, stake=100.0)
    exchange.get_mark_price.return_value = 60000.0
    with pytest.raises(StakeLimitExceeded) as exc_info:
        await _order(validator, 0.002, order_type="MARKET")
    assert exc_info.value.details["order_notional"] == pytest.approx(120.0)
    exchange.get_mark_price.assert_awaited_with("BTC")


# ---------------------------------------------------------------------------
# 3. Live position reconciliation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_live_exposure_above_mark_bumps_it(engine, validator, exchange):
    fight_id = make_fight(engine, stake=100.0)
    add_trade(engine, fight_id, "alice", "BUY", 0.001, 50000.0)
    set_participant(engine, fight_id, "alice", max_exposure_used=50.0)
    exchange.get_positions.return_value = [
        {"symbol": "BTC", "side": "bid", "amount": 0.0016, "entry_price": 50000.0},
        # Not traded in this fight
        {"symbol": "ETH", "side": "bid", "amount": 10.0, "entry_price": 3000.0},
    ]

    await _order(validator, 0.001, price=100.0)
    assert get_participant(engine, fight_id, "alice").max_exposure_used == pytest.approx(80.0)


@pytest.mark.asyncio
async def test_live_position_failure_falls_back_to_ledger(engine, validator, exchange, caplog):
    fight_id = make_fight(engine, stake=100.0)
    add_trade(engine, fight_id, "alice", "BUY", 0.001, 50000.0)
    set_participant(engine, fight_id, "alice", max_exposure_used=50.0)
    exchange.get_positions.side_effect = ExchangeError("timeout")

    with caplog.at_level(logging.ERROR):
        result = await _order(validator, 0.5, price=100.0)
    assert result.in_fight is True
    assert "using ledger only" in caplog.text


# ---------------------------------------------------------------------------
# 4. Pending orders
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pending_fight_orders_reduce_available(engine, validator, exchange):
    fight_id = make_fight(engine, stake=100.0)
    add_order_action(engine, fight_id, "alice", "o1")
    exchange.get_open_orders.return_value = [
        {"order_id": "o1", "symbol": "BTC", "price": 30000.0, "stop_price": None,
         "initial_amount": 0.002, "filled_amount": 0.0005, "cancelled_amount": 0.0005, "reduce_only": False},
        # Placed outside this fight
        {"order_id": "o2", "symbol": "BTC", "price": 30000.0, "stop_price": None,
         "initial_amount": 1.0, "filled_amount": 0.0, "cancelled_amount": 0.0, "reduce_only": False},
    ]

    with pytest.raises(StakeLimitExceeded) as exc_info:
        await _order(validator, 0.8, price=100.0)
    assert exc_info.value.details["pending_notional"] == pytest.approx(30.0)
    assert exc_info.value.details["available"] == pytest.approx(70.0)

    assert (await _order(validator, 0.5, price=100.0)).in_fight is True


@pytest.mark.asyncio
async def test_reduce_only_pending_orders_ignored(engine, validator, exchange):
    fight_id = make_fight(engine, stake=100.0)
    add_order_action(engine, fight_id, "alice", "o1")
    exchange.get_open_orders.return_value = [
        {"order_id": "o1", "symbol": "BTC", "price": 0.0, "stop_price": 40000.0,
         "initial_amount": 0.01, "filled_amount": 0.0, "cancelled_amount": 0.0, "reduce_only": True},
    ]
    assert (await _order(validator, 1.0, price=100.0)).in_fight is True


# ---------------------------------------------------------------------------
# 5. Atomic high-water mark and stake info
# ---------------------------------------------------------------------------

def test_max_exposure_never_decreases(engine):
    fight_id = make_fight(engine)
    participant_id = get_participant(engine, fight_id, "alice").id
    update_max_exposure_if_higher(engine, participant_id, 70.0)
    update_max_exposure_if_higher(engine, participant_id, 40.0)
    assert get_participant(engine, fight_id, "alice").max_exposure_used == pytest.approx(70.0)
    update_max_exposure_if_higher(engine, participant_id, 90.0)
    assert get_participant(engine, fight_id, "alice").max_exposure_used == pytest.approx(90.0)


@pytest.mark.asyncio
async def test_stake_info(engine, validator):
    fight_id = make_fight(engine, stake=250.0)
    add_trade(engine, fight_id, "alice", "BUY", 0.001, 50000.0)
    set_participant(engine, fight_id, "alice", max_exposure_used=100.0)
    info = await validator.stake_info("alice", fight_id)
    assert info["stake"] == 250.0
    assert info["current_exposure"] == pytest.approx(50.0)
    assert info["available"] == pytest.approx(200.0)
    assert await validator.stake_info("alice", fight_id + 1) is None


@pytest.mark.asyncio
async def test_stake_info_matches_live_positions(engine, validator, exchange):
    fight_id = make_fight(engine, stake=250.0)
    add_trade(engine, fight_id, "alice", "BUY", 0.001, 50000.0)
    set_participant(engine, fight_id, "alice", max_exposure_used=50.0)
    # A 0.003 BTC fill the ledger has not seen yet
    exchange.get_positions.return_value = [
        {"symbol": "BTC-USD", "side": "bid", "amount": 0.004, "entry_price": 50000.0},
    ]

    info = await validator.stake_info("alice", fight_id)
    assert info["current_exposure"] == pytest.approx(200.0)
    assert info["max_exposure_used"] == pytest.approx(200.0)
    assert info["available"] == pytest.approx(250.0)
    assert get_participant(engine, fight_id, "alice").max_exposure_used == pytest.approx(200.0)
    exchange.get_positions.assert_awaited_once_with(ACCOUNT)


@pytest.mark.asyncio
async def test_stake_info_falls_back_to_ledger(engine, validator, exchange, caplog):
    fight_id = make_fight(engine, stake=250.0)
    add_trade(engine, fight_id, "alice", "BUY", 0.001, 50000.0)
    set_participant(engine, fight_id, "alice", max_exposure_used=100.0)
    exchange.get_positions.side_effect = ExchangeError("timeout")

    with caplog.at_level(logging.ERROR):
        info = await validator.stake_info("alice", fight_id)
    assert info["current_exposure"] == pytest.approx(50.0)
    assert info["available"] == pytest.approx(200.0)
    assert "using ledger only" in caplog.text
