"""Shared fixtures: a throwaway SQLite database and row factories."""

from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, select

from fightclub.database import build_engine, create_db_and_tables
from fightclub.models import (
    ExchangeAccount,
    Fight,
    FightOrderAction,
    FightParticipant,
    FightSession,
    FightStatus,
    FightTrade,
)
from fightclub.utils.timeutil import utcnow


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'fightclub.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


def make_fight(
    engine,
    user_a: str = "alice",
    user_b: str | None = "bob",
    status: FightStatus = FightStatus.LIVE,
    stake: float = 100.0,
    duration_minutes: int = 15,
    started_at: datetime | None = None,
    initial_positions: dict[str, list[dict]] | None = None,
) -> int:
    """Insert a fight with its participants and return the fight id."""
    if started_at is None and status != FightStatus.WAITING:
        started_at = utcnow() - timedelta(minutes=duration_minutes)
    initial_positions = initial_positions or {}
    with Session(engine) as session:
        fight = Fight(
            status=status,
            duration_minutes=duration_minutes,
            stake_usdc=stake,
            creator_id=user_a,
            started_at=started_at,
        )
        session.add(fight)
        session.commit()
        session.refresh(fight)
        session.add(FightParticipant(
            fight_id=fight.id,
            user_id=user_a,
            slot="A",
            initial_positions=initial_positions.get(user_a, []),
        ))
        if user_b is not None:
            session.add(FightParticipant(
                fight_id=fight.id,
                user_id=user_b,
                slot="B",
                initial_positions=initial_positions.get(user_b, []),
            ))
        session.commit()
        return fight.id


def add_trade(
    engine,
    fight_id: int,
    user_id: str,
    side: str,
    amount: float,
    price: float,
    symbol: str = "BTC",
    pnl: float = 0.0,
    fee: float = 0.0,
    executed_at: datetime | None = None,
    exchange_order_id: str | None = None,
) -> FightTrade:
    with Session(engine) as session:
        trade = FightTrade(
            fight_id=fight_id,
            participant_user_id=user_id,
            symbol=symbol,
            side=side,
            amount=amount,
            price=price,
            pnl=pnl,
            fee=fee,
            exchange_order_id=exchange_order_id,
            executed_at=executed_at or utcnow(),
        )
        session.add(trade)
        session.commit()
        session.refresh(trade)
        return trade


def add_session(engine, fight_id: int, user_id: str, ip_address: str, created_at: datetime | None = None):
    with Session(engine) as session:
        session.add(FightSession(
            fight_id=fight_id,
            user_id=user_id,
            ip_address=ip_address,
            session_type="join",
            created_at=created_at or utcnow(),
        ))
        session.commit()


def add_account(engine, account_address: str, user_id: str):
    with Session(engine) as session:
        session.add(ExchangeAccount(account_address=account_address, user_id=user_id))
        session.commit()


def add_order_action(engine, fight_id: int, user_id: str, exchange_order_id: str, symbol: str = "BTC"):
    with Session(engine) as session:
        session.add(FightOrderAction(
            fight_id=fight_id,
            user_id=user_id,
            exchange_order_id=exchange_order_id,
            symbol=symbol,
            action_type="LIMIT_ORDER",
        ))
        session.commit()


def get_participant(engine, fight_id: int, user_id: str) -> FightParticipant:
    with Session(engine) as session:
        return session.exec(
            select(FightParticipant).where(
                FightParticipant.fight_id == fight_id, FightParticipant.user_id == user_id
            )
        ).one()


def set_participant(engine, fight_id: int, user_id: str, **values):
    with Session(engine) as session:
        row = session.exec(
            select(FightParticipant).where(
                FightParticipant.fight_id == fight_id, FightParticipant.user_id == user_id
            )
        ).one()
        for key, value in values.items():
            setattr(row, key, value)
        session.add(row)
        session.commit()


def get_fight(engine, fight_id: int) -> Fight:
    with Session(engine) as session:
        return session.get(Fight, fight_id)


def set_fight(engine, fight_id: int, **values):
    with Session(engine) as session:
        fight = session.get(Fight, fight_id)
        for key, value in values.items():
            setattr(fight, key, value)
        session.add(fight)
        session.commit()
