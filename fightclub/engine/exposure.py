"""Fight exposure and position reconstruction from FightTrade rows.

Pure functions used by the stake-limit validator, the trade recorder and the
stake info API. Positions are replayed in execution order; each symbol tracks a
signed amount (positive = LONG, negative = SHORT) and the total cost basis of
what is still open.

Pre-fight positions are positions the user already held when the fight started.
Closing them must not be recorded as fight trades and must not consume stake.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from fightclub.utils.constants import DUST_THRESHOLD


@dataclass
class PositionState:
    amount: float = 0.0  # Signed: + LONG, - SHORT
    total_cost: float = 0.0
    trades_count: int = 0
    leverage: float | None = None


@dataclass
class OpenPosition:
    symbol: str
    side: str  # "LONG" or "SHORT"
    amount: float
    avg_entry_price: float
    trades_count: int
    leverage: float | None


@dataclass
class ExposureResult:
    current_exposure: float  # Notional of positions still open
    cumulative_opening_notional: float  # Capital ever committed to opening positions
    positions_by_symbol: dict[str, PositionState] = field(default_factory=dict)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def base_symbol(symbol: str) -> str:
    """BTC-USD -> BTC."""
    return symbol.replace("-USD", "")


def same_symbol(a: str, b: str) -> bool:
    return a == b or base_symbol(a) == base_symbol(b)


def _apply_trade(pos: PositionState, side: str, amount: float, price: float) -> float:
    """Apply one fill to a position. Returns the notional that OPENED exposure."""
    opened = 0.0
    if side == "BUY":
        if pos.amount < 0:
            # Closing SHORT, remainder flips to LONG
            short_to_close = min(amount, abs(pos.amount))
            long_to_open = amount - short_to_close
            avg_short_entry = pos.total_cost / abs(pos.amount)
            pos.total_cost -= short_to_close * avg_short_entry
            if long_to_open > 0:
                pos.total_cost += long_to_open * price
                opened = long_to_open * price
        else:
            pos.total_cost += amount * price
            opened = amount * price
        pos.amount += amount
    else:
        if pos.amount > 0:
            # Closing LONG, remainder flips to SHORT
            long_to_close = min(amount, pos.amount)
            short_to_open = amount - long_to_close
            avg_long_entry = pos.total_cost / pos.amount
            pos.total_cost -= long_to_close * avg_long_entry
            if short_to_open > 0:
                pos.total_cost += short_to_open * price
                opened = short_to_open * price
        else:
            pos.total_cost += amount * price
            opened = amount * price
        pos.amount -= amount
    return opened


def positions_from_trades(trades: Iterable[Any]) -> dict[str, PositionState]:
    """Replay trades (already in execution order) into per-symbol position state.

    Accepts FightTrade rows or mappings with symbol, side, amount, price and an
    optional leverage. A fill larger than the opposite position closes it at the
    average entry and opens the remainder at the fill price.
    """
    positions: dict[str, PositionState] = {}
    for trade in trades:
        symbol = _field(trade, "symbol")
        pos = positions.setdefault(symbol, PositionState())
        pos.trades_count += 1

        leverage = _field(trade, "leverage")
        if leverage:
            pos.leverage = leverage

        _apply_trade(
            pos,
            _field(trade, "side"),
            float(_field(trade, "amount")),
            float(_field(trade, "price")),
        )
    return positions


def exposure_from_trades(trades: Iterable[Any]) -> ExposureResult:
    """Current open notional plus cumulative opening notional for a trade list."""
    positions: dict[str, PositionState] = {}
    cumulative_opening = 0.0
    for trade in trades:
        symbol = _field(trade, "symbol")
        pos = positions.setdefault(symbol, PositionState())
        pos.trades_count += 1
        cumulative_opening += _apply_trade(
            pos,
            _field(trade, "side"),
            float(_field(trade, "amount")),
            float(_field(trade, "price")),
        )

    current = sum(
        abs(pos.total_cost)
        for pos in positions.values()
        if abs(pos.amount) >= DUST_THRESHOLD
    )
    return ExposureResult(
        current_exposure=current,
        cumulative_opening_notional=cumulative_opening,
        positions_by_symbol=positions,
    )


def fight_relevant_amount(
    side: str,
    trade_amount: float,
    symbol: str,
    initial_positions: Iterable[Any],
    existing_fight_trades: Iterable[Any],
) -> float:
    """How much of a new fill should be recorded as a fight trade.

    SELL allocation order:
      1. remaining pre-fight LONG  -> not recorded
      2. fight-opened LONG         -> recorded
      3. new SHORT                 -> recorded
    BUY is symmetric against pre-fight / fight SHORT.

    The remaining pre-fight position is derived from the recorded fight trades,
    so a fill that returned 0 here is invisible to later calls. Callers must
    keep the pre-fight snapshot current themselves (TradeRecorder decrements it).
    """
    initial_amount = 0.0
    for ip in initial_positions:
        if same_symbol(_field(ip, "symbol"), symbol):
            initial_amount = float(_field(ip, "amount", 0))
            break

    fight_buys = 0.0
    fight_sells = 0.0
    for t in existing_fight_trades:
        if not same_symbol(_field(t, "symbol"), symbol):
            continue
        if _field(t, "side") == "BUY":
            fight_buys += float(_field(t, "amount"))
        else:
            fight_sells += float(_field(t, "amount"))
    fight_net = fight_buys - fight_sells

    if side == "SELL":
        initial_long = max(0.0, initial_amount)
        remaining_pre_fight = max(0.0, initial_long - min(initial_long, fight_sells))
        current_fight_position = max(0.0, fight_net)
    else:
        initial_short = abs(min(0.0, initial_amount))
        remaining_pre_fight = max(0.0, initial_short - min(initial_short, fight_buys))
        current_fight_position = abs(min(0.0, fight_net))

    remaining = trade_amount
    closes_pre_fight = min(remaining, remaining_pre_fight)
    remaining -= closes_pre_fight
    closes_fight = min(remaining, current_fight_position)
    remaining -= closes_fight
    opens_new = remaining

    return closes_fight + opens_new


def open_positions(positions_by_symbol: Mapping[str, PositionState]) -> list[OpenPosition]:
    """Positions still open (dust filtered), with side and average entry."""
    result = []
    for symbol, pos in positions_by_symbol.items():
        if abs(pos.amount) < DUST_THRESHOLD:
            continue
        result.append(OpenPosition(
            symbol=symbol,
            side="LONG" if pos.amount > 0 else "SHORT",
            amount=abs(pos.amount),
            avg_entry_price=abs(pos.total_cost / pos.amount),
            trades_count=pos.trades_count,
            leverage=pos.leverage,
        ))
    return result


def calculate_available_capital(stake: float, max_exposure_used: float, current_exposure: float) -> float:
    """available = stake - max_exposure_used + current_exposure, never negative.

    Capital sitting in an open position is already counted in max_exposure_used
    and can be closed and reopened:
      stake=100, max_used=80, current=80 -> 100
      stake=100, max_used=80, current=0  -> 20
    """
    return max(0.0, stake - max_exposure_used + current_exposure)
