"""Realized / unrealized PnL of a participant's fight trades.

Only the closing part of a fill realizes PnL: when a fill closes 0.4 of a
position and opens 0.6 in the other direction, 40% of the fill's reported pnl
counts. Positions still open at fight end contribute nothing to realized PnL.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from fightclub.engine.exposure import PositionState
from fightclub.models.fight_trade import FightTrade
from fightclub.utils.constants import DEFAULT_LEVERAGE, DUST_THRESHOLD


@dataclass
class PnlResult:
    realized_pnl: float
    unrealized_pnl: float
    total_fees: float
    margin: float
    trades_count: int
    positions_by_symbol: dict[str, PositionState] = field(default_factory=dict)


def calculate_fight_pnl(
    trades: Iterable[FightTrade],
    current_prices: Mapping[str, float] | None = None,
) -> PnlResult:
    positions: dict[str, PositionState] = {}
    realized = 0.0
    fees = 0.0
    count = 0

    for trade in trades:
        count += 1
        fees += trade.fee or 0.0
        pos = positions.setdefault(trade.symbol, PositionState())
        pos.trades_count += 1
        if trade.leverage:
            pos.leverage = trade.leverage

        amount = trade.amount
        closing_against = (trade.side == "BUY" and pos.amount < 0) or (trade.side == "SELL" and pos.amount > 0)
        if not closing_against:
            pos.total_cost += amount * trade.price
            pos.amount += amount if trade.side == "BUY" else -amount
            continue

        held = abs(pos.amount)
        close_amount = min(amount, held)
        open_amount = amount - close_amount
        if amount > 0:
            realized += (trade.pnl or 0.0) * (close_amount / amount)

        pos.total_cost -= close_amount * (pos.total_cost / held)
        direction = 1 if trade.side == "BUY" else -1
        pos.amount += direction * close_amount
        if open_amount > 0:
            pos.total_cost += open_amount * trade.price
            pos.amount += direction * open_amount

    unrealized = 0.0
    margin = 0.0
    for symbol, pos in positions.items():
        if abs(pos.amount) < DUST_THRESHOLD:
            continue
        avg_entry = pos.total_cost / abs(pos.amount)
        mark = (current_prices or {}).get(symbol)
        if mark:
            unrealized += (mark - avg_entry) * pos.amount
        position_value = abs(pos.amount) * (mark or avg_entry)
        margin += position_value / (pos.leverage or DEFAULT_LEVERAGE)

    return PnlResult(
        realized_pnl=realized,
        unrealized_pnl=unrealized,
        total_fees=fees,
        margin=margin,
        trades_count=count,
        positions_by_symbol=positions,
    )


def calculate_pnl_percent(total_pnl: float, current_margin: float, max_exposure_used: float) -> float:
    """ROI% against current margin, or max exposure used once everything is closed."""
    effective_margin = current_margin if current_margin > 0 else max_exposure_used
    return total_pnl / effective_margin * 100 if effective_margin > 0 else 0.0
