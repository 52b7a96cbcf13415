"""Records exchange fills as fight trades.

Only the fight-attributable part of a fill is stored. A fill that unwinds a
position the user already held when the fight started is, for that part, not
a fight trade: it consumes the remaining pre-fight snapshot instead.
"""

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from fightclub.engine.exposure import same_symbol, exposure_from_trades, fight_relevant_amount
from fightclub.models.fight import Fight, FightStatus
from fightclub.models.fight_trade import FightTrade
from fightclub.models.order_action import FightOrderAction
from fightclub.models.participant import FightParticipant
from fightclub.services.stake_limit import update_max_exposure_if_higher
from fightclub.utils.constants import DUST_THRESHOLD
from fightclub.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

ORDER_ACTION_TYPES = ("MARKET_ORDER", "LIMIT_ORDER", "STOP_ORDER", "CANCEL")


def consume_initial_position(initial_positions: list[dict], symbol: str, side: str, amount: float) -> list[dict]:
    """Return a new snapshot with `amount` of the pre-fight position on `symbol` closed.

    SELL closes a pre-fight long, BUY a pre-fight short. Exhausted entries are dropped.
    """
    updated = []
    for ip in initial_positions:
        if amount > 0 and same_symbol(ip["symbol"], symbol):
            held = float(ip["amount"])
            if side == "SELL" and held > 0:
                held = max(0.0, held - amount)
            elif side == "BUY" and held < 0:
                held = min(0.0, held + amount)
            if abs(held) < DUST_THRESHOLD:
                continue
            updated.append({**ip, "amount": held})
        else:
            updated.append(ip)
    return updated


class TradeRecorder:
    def __init__(self, engine: Engine):
        self.engine = engine

    def record_fill(
        self,
        fight_id: int,
        user_id: str,
        symbol: str,
        side: str,
        amount: float,
        price: float,
        fee: float = 0.0,
        pnl: float = 0.0,
        leverage: float | None = None,
        exchange_order_id: str | None = None,
        executed_at: datetime | None = None,
    ) -> FightTrade | None:
        """Store the fight-relevant part of a fill; None when nothing is fight-relevant.

        Fee and pnl are scaled down to the recorded fraction of the fill.
        Raises LookupError if the user is not in the fight and ValueError if the
        fight is not LIVE.
        """
        side = side.upper()
        if side not in ("BUY", "SELL"):
            raise ValueError(f"Unknown side: {side}")
        if amount <= 0:
            raise ValueError("Fill amount must be positive")

        with Session(self.engine) as session:
            fight = session.get(Fight, fight_id)
            # Row lock: concurrent fills for one participant must see each other's snapshot
            participant = session.exec(
                select(FightParticipant).where(
                    FightParticipant.fight_id == fight_id,
                    FightParticipant.user_id == user_id,
                ).with_for_update()
            ).first()
            if fight is None or participant is None:
                raise LookupError(f"User {user_id} is not a participant of fight {fight_id}")
            if fight.status != FightStatus.LIVE:
                raise ValueError(f"Fight {fight_id} is {fight.status.value}, fills are only recorded while LIVE")

            snapshot = list(participant.initial_positions or [])
            # Prior fight trades are irrelevant here: the snapshot is already the remaining pre-fight position
            relevant = fight_relevant_amount(side, amount, symbol, snapshot, [])
            pre_fight_part = amount - relevant

            if pre_fight_part > DUST_THRESHOLD:
                # Reassign so the JSON column is flagged dirty
                participant.initial_positions = consume_initial_position(snapshot, symbol, side, pre_fight_part)
                logger.info(
                    f"[fight_{fight_id}] {user_id} {side} {amount} {symbol}: "
                    f"{pre_fight_part} closes pre-fight position, {relevant} recorded"
                )

            trade = None
            if relevant > DUST_THRESHOLD:
                fraction = relevant / amount
                trade = FightTrade(
                    fight_id=fight_id,
                    participant_user_id=user_id,
                    symbol=symbol,
                    side=side,
                    amount=relevant,
                    price=price,
                    leverage=leverage,
                    fee=(fee or 0.0) * fraction,
                    pnl=(pnl or 0.0) * fraction,
                    exchange_order_id=exchange_order_id,
                    executed_at=executed_at or utcnow(),
                )
                session.add(trade)

            session.add(participant)
            if trade is not None:
                session.execute(
                    update(FightParticipant)
                    .where(FightParticipant.id == participant.id)
                    .values(trades_count=FightParticipant.trades_count + 1)
                )
            session.commit()
            if trade is not None:
                session.refresh(trade)
            participant_id = participant.id

        if trade is None:
            return None

        with Session(self.engine) as session:
            trades = session.exec(
                select(FightTrade)
                .where(FightTrade.fight_id == fight_id, FightTrade.participant_user_id == user_id)
                .order_by(FightTrade.executed_at, FightTrade.id)
            ).all()
        current = exposure_from_trades(trades).current_exposure
        update_max_exposure_if_higher(self.engine, participant_id, current)

        logger.info(
            f"[fight_{fight_id}] Recorded {side} {relevant} {symbol} @ {price} for {user_id} "
            f"(exposure {current:.2f})"
        )
        return trade

    def record_order_action(
        self,
        fight_id: int,
        user_id: str,
        exchange_order_id: str,
        symbol: str,
        action_type: str,
    ) -> FightOrderAction:
        """Remember that an exchange order was placed (or cancelled) for a fight."""
        if action_type not in ORDER_ACTION_TYPES:
            raise ValueError(f"Unknown order action type: {action_type}")
        action = FightOrderAction(
            fight_id=fight_id,
            user_id=user_id,
            exchange_order_id=str(exchange_order_id),
            symbol=symbol,
            action_type=action_type,
        )
        with Session(self.engine) as session:
            session.add(action)
            session.commit()
            session.refresh(action)
        return action
