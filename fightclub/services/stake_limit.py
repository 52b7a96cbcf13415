"""Stake limit validation for orders placed during a fight.

A fighter can never have more than the fight stake allocated. Capital is
tracked with a high-water mark (max_exposure_used): once used, capital that was
released by closing a position cannot be reused, except for the part still
sitting in an open position, which can be closed and reopened.

    available = stake - max_exposure_used + current_exposure - pending_notional
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from fightclub.engine.exposure import base_symbol, calculate_available_capital, exposure_from_trades
from fightclub.models.exchange_account import ExchangeAccount
from fightclub.models.fight import Fight, FightStatus
from fightclub.models.fight_trade import FightTrade
from fightclub.models.order_action import FightOrderAction
from fightclub.models.participant import FightParticipant
from fightclub.services.exchange_client import ExchangeClient

logger = logging.getLogger(__name__)

STAKE_LIMIT_EXCEEDED = "STAKE_LIMIT_EXCEEDED"


class StakeLimitExceeded(Exception):
    """Order would allocate more than the fighter has left of the stake."""

    code = STAKE_LIMIT_EXCEEDED

    def __init__(self, details: dict):
        self.details = details
        super().__init__(
            f"Stake limit exceeded. "
            f"Fight stake: {details['stake']:.2f} USDC. "
            f"Max capital used: {details['max_exposure_used']:.2f} USDC. "
            f"Available: {details['available']:.2f} USDC. "
            f"Order size: {details['order_notional']:.2f} USDC."
        )


@dataclass
class ActiveFight:
    fight_id: int
    participant_id: int
    user_id: str
    stake_usdc: float
    max_exposure_used: float


@dataclass
class StakeCheckResult:
    in_fight: bool
    fight_id: int | None = None
    participant_id: int | None = None


def update_max_exposure_if_higher(engine: Engine, participant_id: int, new_exposure: float) -> None:
    """Raise the participant's high-water mark to new_exposure if it is higher.

    Single conditional UPDATE so concurrent trades on the same participant
    cannot overwrite each other with a lower value.
    """
    greatest = func.max if engine.dialect.name == "sqlite" else func.greatest
    with Session(engine) as session:
        session.execute(
            update(FightParticipant)
            .where(FightParticipant.id == participant_id)
            .values(max_exposure_used=greatest(FightParticipant.max_exposure_used, new_exposure))
        )
        session.commit()


class StakeLimitValidator:
    """Accepts or rejects a prospective order against the fighter's stake."""

    def __init__(self, engine: Engine, exchange: ExchangeClient):
        self.engine = engine
        self.exchange = exchange

    def update_max_exposure_if_higher(self, participant_id: int, new_exposure: float) -> None:
        update_max_exposure_if_higher(self.engine, participant_id, new_exposure)

    def get_user_id_for_account(self, account_address: str) -> str | None:
        with Session(self.engine) as session:
            account = session.exec(
                select(ExchangeAccount).where(ExchangeAccount.account_address == account_address)
            ).first()
        return account.user_id if account else None

    def get_account_for_user(self, user_id: str) -> str | None:
        with Session(self.engine) as session:
            account = session.exec(
                select(ExchangeAccount).where(ExchangeAccount.user_id == user_id)
            ).first()
        return account.account_address if account else None

    def get_active_fight(self, user_id: str, fight_id: int | None = None) -> ActiveFight | None:
        """The user's LIVE fight (a specific one when fight_id is given)."""
        stmt = (
            select(FightParticipant, Fight)
            .join(Fight, Fight.id == FightParticipant.fight_id)
            .where(FightParticipant.user_id == user_id, Fight.status == FightStatus.LIVE)
        )
        if fight_id is not None:
            stmt = stmt.where(Fight.id == fight_id)
        with Session(self.engine) as session:
            row = session.exec(stmt).first()
        if row is None:
            return None
        participant, fight = row
        return ActiveFight(
            fight_id=fight.id,
            participant_id=participant.id,
            user_id=user_id,
            stake_usdc=fight.stake_usdc,
            max_exposure_used=participant.max_exposure_used or 0.0,
        )

    def get_fight_trades(self, fight_id: int, user_id: str) -> list[FightTrade]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(FightTrade)
                .where(FightTrade.fight_id == fight_id, FightTrade.participant_user_id == user_id)
                .order_by(FightTrade.executed_at, FightTrade.id)
            ).all())

    async def _live_exposure(self, account: str, traded_symbols: set[str]) -> float:
        """Open notional on the exchange, limited to symbols traded in this fight."""
        if not traded_symbols:
            return 0.0
        positions = await self.exchange.get_positions(account)
        exposure = 0.0
        for pos in positions:
            if base_symbol(pos["symbol"]) not in traded_symbols:
                continue
            exposure += abs(pos["amount"]) * pos["entry_price"]
        return exposure

    async def _reconcile_live_exposure(
        self, account: str, active: ActiveFight, traded_symbols: set[str]
    ) -> tuple[float, float]:
        """Live exposure and the (possibly bumped) high-water mark.

        A failed exchange lookup counts as 0 live exposure, leaving the ledger figure.
        """
        live_exposure = 0.0
        try:
            live_exposure = await self._live_exposure(account, traded_symbols)
        except Exception as e:
            logger.error(f"[stake] Live position lookup failed for {account}, using ledger only: {e}")

        max_used = active.max_exposure_used
        if live_exposure > max_used:
            # Fills not yet ingested into FightTrade; keep the high-water mark honest
            try:
                self.update_max_exposure_if_higher(active.participant_id, live_exposure)
                max_used = live_exposure
            except SQLAlchemyError as e:
                logger.error(f"[stake] Failed to bump max exposure for participant {active.participant_id}: {e}")
        return live_exposure, max_used

    async def _pending_notional(self, account: str, active: ActiveFight) -> float:
        """Notional earmarked by this fight's resting limit / stop orders."""
        with Session(self.engine) as session:
            fight_order_ids = set(session.exec(
                select(FightOrderAction.exchange_order_id).where(
                    FightOrderAction.fight_id == active.fight_id,
                    FightOrderAction.user_id == active.user_id,
                )
            ).all())
        if not fight_order_ids:
            return 0.0

        orders = await self.exchange.get_open_orders(account)
        pending = 0.0
        for order in orders:
            if order["order_id"] not in fight_order_ids or order["reduce_only"]:
                continue
            remaining = order["initial_amount"] - order["filled_amount"] - order["cancelled_amount"]
            if remaining <= 0:
                continue
            price = order["price"] or order["stop_price"] or 0.0
            pending += remaining * price
        return pending

    async def validate_order(
        self,
        account: str,
        symbol: str,
        amount: float,
        price: float | None,
        order_type: str,
        reduce_only: bool,
        fight_id: int | None = None,
    ) -> StakeCheckResult:
        """Raise StakeLimitExceeded if the order does not fit in the remaining stake."""
        if reduce_only:
            return StakeCheckResult(in_fight=False)

        user_id = self.get_user_id_for_account(account)
        if user_id is None:
            return StakeCheckResult(in_fight=False)

        active = self.get_active_fight(user_id, fight_id)
        if active is None:
            return StakeCheckResult(in_fight=False)

        trades = self.get_fight_trades(active.fight_id, user_id)
        ledger_exposure = exposure_from_trades(trades).current_exposure
        traded_symbols = {base_symbol(t.symbol) for t in trades}

        live_exposure, max_used = await self._reconcile_live_exposure(account, active, traded_symbols)

        current_exposure = max(ledger_exposure, live_exposure)

        if order_type.upper() == "MARKET" or price is None:
            order_price = await self.exchange.get_mark_price(symbol)
        else:
            order_price = float(price)
        order_notional = order_price * abs(float(amount))

        pending = 0.0
        try:
            pending = await self._pending_notional(account, active)
        except Exception as e:
            logger.error(f"[stake] Open order lookup failed for {account}: {e}")

        available = max(0.0, calculate_available_capital(active.stake_usdc, max_used, current_exposure) - pending)

        logger.info(
            f"[stake] fight={active.fight_id} user={user_id} stake={active.stake_usdc:.2f} "
            f"max_used={max_used:.2f} current={current_exposure:.2f} pending={pending:.2f} "
            f"order={order_notional:.2f} available={available:.2f}"
        )

        if order_notional > available:
            raise StakeLimitExceeded({
                "stake": active.stake_usdc,
                "max_exposure_used": max_used,
                "current_exposure": current_exposure,
                "pending_notional": pending,
                "order_notional": order_notional,
                "available": available,
            })

        return StakeCheckResult(
            in_fight=True,
            fight_id=active.fight_id,
            participant_id=active.participant_id,
        )

    async def stake_info(self, user_id: str, fight_id: int) -> dict | None:
        """Stake usage summary for the fight UI, reconciled with live positions like validate_order."""
        active = self.get_active_fight(user_id, fight_id)
        if active is None:
            return None
        trades = self.get_fight_trades(fight_id, user_id)
        current_exposure = exposure_from_trades(trades).current_exposure
        max_used = active.max_exposure_used

        account = self.get_account_for_user(user_id)
        if account is not None:
            traded_symbols = {base_symbol(t.symbol) for t in trades}
            live_exposure, max_used = await self._reconcile_live_exposure(account, active, traded_symbols)
            current_exposure = max(current_exposure, live_exposure)

        return {
            "fight_id": fight_id,
            "stake": active.stake_usdc,
            "max_exposure_used": max_used,
            "current_exposure": current_exposure,
            "available": calculate_available_capital(active.stake_usdc, max_used, current_exposure),
        }
