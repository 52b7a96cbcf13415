"""Database models."""

from fightclub.models.fight import Fight, FightStatus
from fightclub.models.participant import FightParticipant
from fightclub.models.fight_trade import FightTrade
from fightclub.models.fight_session import FightSession
from fightclub.models.violation import AntiCheatViolation
from fightclub.models.exchange_account import ExchangeAccount
from fightclub.models.order_action import FightOrderAction

__all__ = [
    "Fight",
    "FightStatus",
    "FightParticipant",
    "FightTrade",
    "FightSession",
    "AntiCheatViolation",
    "ExchangeAccount",
    "FightOrderAction",
]
