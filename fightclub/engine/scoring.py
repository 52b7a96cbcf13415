"""Fight scoring.

EquityVirtual = Stake + RealizedPnL + UnrealizedPnL - Fees - Funding
PnL%          = EquityVirtual / Stake - 1
ScoreUSDC     = Stake * PnL%

Winner is the participant with the higher ScoreUSDC at fight end.
"""

import math
from dataclasses import dataclass

from fightclub.utils.constants import SCORE_EPSILON


class ScoringError(ValueError):
    """Scoring input out of range or result not finite."""


@dataclass
class ScoringInput:
    stake: float
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    fees: float = 0.0
    funding: float = 0.0


@dataclass
class ScoringResult:
    equity_virtual: float
    pnl_percent: float  # Fraction: 0.05 == +5%
    score_usdc: float


@dataclass
class WinnerResult:
    winner_id: str | None
    is_draw: bool


def calculate_score(data: ScoringInput) -> ScoringResult:
    if not data.stake > 0:
        raise ScoringError("Stake must be positive")

    equity_virtual = data.stake + data.realized_pnl + data.unrealized_pnl - data.fees - data.funding
    pnl_percent = equity_virtual / data.stake - 1
    score_usdc = data.stake * pnl_percent

    if not all(math.isfinite(v) for v in (equity_virtual, pnl_percent, score_usdc)):
        raise ScoringError("Scoring calculation produced invalid result")

    return ScoringResult(
        equity_virtual=equity_virtual,
        pnl_percent=pnl_percent,
        score_usdc=score_usdc,
    )


def determine_winner(
    participant_a_id: str,
    participant_a_score: float,
    participant_b_id: str,
    participant_b_score: float,
) -> WinnerResult:
    """Higher score wins; scores within SCORE_EPSILON are a draw."""
    if abs(participant_a_score - participant_b_score) < SCORE_EPSILON:
        return WinnerResult(winner_id=None, is_draw=True)
    winner = participant_a_id if participant_a_score > participant_b_score else participant_b_id
    return WinnerResult(winner_id=winner, is_draw=False)


def format_pnl_percent(pnl_percent: float) -> str:
    """0.05 -> "+5.00%", -0.025 -> "-2.50%"."""
    formatted = f"{pnl_percent * 100:.2f}"
    return f"+{formatted}%" if pnl_percent >= 0 else f"{formatted}%"


def format_usdc_amount(amount: float) -> str:
    """50 -> "+$50.00", -25 -> "-$25.00"."""
    sign = "+" if amount >= 0 else "-"
    return f"{sign}${abs(amount):.2f}"
