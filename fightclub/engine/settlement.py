"""Fight settlement: scores, anti-cheat adjudication, final status.

Every step runs under the settlement lock for the fight. Each step opens and
closes its own session; on SQLite a second session would otherwise block on
the first one's write lock.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from fightclub.engine.pnl import calculate_fight_pnl
from fightclub.engine.scoring import ScoringInput, ScoringResult, calculate_score, determine_winner
from fightclub.models.fight import Fight, FightStatus
from fightclub.models.fight_trade import FightTrade
from fightclub.models.participant import FightParticipant
from fightclub.services.anti_cheat import AntiCheatService, ValidationResult
from fightclub.services.settlement_lock import settlement_lock
from fightclub.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SettlementOutcome:
    fight_id: int
    status: FightStatus
    winner_id: str | None
    is_draw: bool
    scores: dict[str, ScoringResult] = field(default_factory=dict)
    violations: list[ValidationResult] = field(default_factory=list)
    decided_by: str = "score_result"


class SettlementOrchestrator:
    """Settles one fight at a time; safe to call from several processes at once."""

    def __init__(self, engine: Engine, anti_cheat: AntiCheatService):
        self.engine = engine
        self.anti_cheat = anti_cheat

    def _compute_scores(self, fight_id: int) -> tuple[list[FightParticipant], dict[str, ScoringResult]]:
        """Score each participant from realized PnL and persist the final figures."""
        with Session(self.engine) as session:
            fight = session.get(Fight, fight_id)
            participants = list(session.exec(
                select(FightParticipant)
                .where(FightParticipant.fight_id == fight_id)
                .order_by(FightParticipant.slot)
            ).all())
            trades = list(session.exec(
                select(FightTrade)
                .where(FightTrade.fight_id == fight_id)
                .order_by(FightTrade.executed_at, FightTrade.id)
            ).all())

            scores: dict[str, ScoringResult] = {}
            for participant in participants:
                own = [t for t in trades if t.participant_user_id == participant.user_id]
                # Positions still open at the end do not count
                pnl = calculate_fight_pnl(own)
                score = calculate_score(ScoringInput(
                    stake=fight.stake_usdc,
                    realized_pnl=pnl.realized_pnl,
                    unrealized_pnl=0.0,
                    fees=pnl.total_fees,
                ))
                scores[participant.user_id] = score

                participant.final_score_usdc = score.score_usdc
                participant.final_pnl_percent = score.pnl_percent * 100
                participant.trades_count = pnl.trades_count
                session.add(participant)
                logger.info(
                    f"[settlement] Fight {fight_id} {participant.slot}={participant.user_id}: "
                    f"realized={pnl.realized_pnl:.4f} fees={pnl.total_fees:.4f} "
                    f"score={score.score_usdc:.4f} ({pnl.trades_count} trades)"
                )
            session.commit()
            for participant in participants:
                session.refresh(participant)
        return participants, scores

    def _persist_result(self, fight_id: int, process_id: str, status: FightStatus,
                        winner_id: str | None, is_draw: bool) -> bool:
        """Write the final result; only while still LIVE and still locked by process_id."""
        with Session(self.engine) as session:
            result = session.execute(
                update(Fight)
                .where(
                    Fight.id == fight_id,
                    Fight.status == FightStatus.LIVE,
                    Fight.settling_by == process_id,
                )
                .values(status=status, ended_at=utcnow(), winner_id=winner_id, is_draw=is_draw)
            )
            session.commit()
        return result.rowcount > 0

    async def settle_fight(self, fight_id: int, process_id: str) -> SettlementOutcome | None:
        """Settle a LIVE fight. Returns None when someone else holds the lock or it is already settled."""
        with settlement_lock(self.engine, fight_id, process_id) as lock:
            if not lock.acquired:
                logger.info(
                    f"[settlement] Fight {fight_id} skipped by {process_id} "
                    f"(status={lock.fight_status.value if lock.fight_status else None}, held by {lock.settling_by})"
                )
                return None

            participants, scores = self._compute_scores(fight_id)

            winner_id = None
            is_draw = False
            if len(participants) == 2:
                a, b = participants
                result = determine_winner(a.user_id, scores[a.user_id].score_usdc,
                                          b.user_id, scores[b.user_id].score_usdc)
                winner_id, is_draw = result.winner_id, result.is_draw
            else:
                logger.warning(f"[settlement] Fight {fight_id} has {len(participants)} participant(s), no winner")

            status = FightStatus.FINISHED
            violations: list[ValidationResult] = []
            decided_by = "score_result"
            if len(participants) == 2:
                try:
                    verdict = await self.anti_cheat.settle_fight_with_anti_cheat(fight_id, winner_id, is_draw)
                    status, winner_id, is_draw = verdict.final_status, verdict.winner_id, verdict.is_draw
                    violations, decided_by = verdict.violations, verdict.decided_by
                except Exception as e:
                    # Settle on score alone rather than leave the fight LIVE
                    logger.error(f"[settlement] Anti-cheat failed for fight {fight_id}: {e}", exc_info=True)

            if not self._persist_result(fight_id, process_id, status, winner_id, is_draw):
                logger.error(f"[settlement] Fight {fight_id} lost its lock or left LIVE before the result was written")
                return None

            logger.info(
                f"[settlement] Fight {fight_id} settled by {process_id}: {status.value}, "
                f"winner={winner_id}, draw={is_draw} ({decided_by})"
            )
            return SettlementOutcome(
                fight_id=fight_id,
                status=status,
                winner_id=winner_id,
                is_draw=is_draw,
                scores=scores,
                violations=violations,
                decided_by=decided_by,
            )
