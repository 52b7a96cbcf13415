"""Anti-cheat rule engine for fight settlement.

Rules:
- ZERO_ZERO: both players PnL ~ 0, or both made 0 trades
- MIN_VOLUME: a player's total notional is below the per-player minimum
- REPEATED_MATCHUP: the same pair fought too often inside the matchup window
- SAME_IP_PATTERN: both players connected from the same IP, repeatedly
- EXTERNAL_TRADES: the fill matcher saw trades placed outside the platform

Each rule returns a ValidationResult; violations are never raised. The final
status and winner are decided by engine.adjudication.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from fightclub.config import Settings, settings
from fightclub.engine.adjudication import AdjudicationContext, adjudicate
from fightclub.engine.scoring import determine_winner
from fightclub.models.fight import Fight, FightStatus
from fightclub.models.fight_session import FightSession
from fightclub.models.fight_trade import FightTrade
from fightclub.models.participant import FightParticipant
from fightclub.models.violation import AntiCheatViolation
from fightclub.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class RuleCode(str, Enum):
    ZERO_ZERO = "ZERO_ZERO"
    MIN_VOLUME = "MIN_VOLUME"
    REPEATED_MATCHUP = "REPEATED_MATCHUP"
    SAME_IP_PATTERN = "SAME_IP_PATTERN"
    EXTERNAL_TRADES = "EXTERNAL_TRADES"


class ViolationAction(str, Enum):
    NO_CONTEST = "NO_CONTEST"
    FLAGGED = "FLAGGED"
    RESTORED = "RESTORED"


RULE_NAMES = {
    RuleCode.ZERO_ZERO: "Zero-Zero No Contest",
    RuleCode.MIN_VOLUME: "Minimum Volume",
    RuleCode.REPEATED_MATCHUP: "Repeated Matchup Limit",
    RuleCode.SAME_IP_PATTERN: "Same IP Pattern",
    RuleCode.EXTERNAL_TRADES: "External Trades Detection",
}

# Violations of these rules always remove the fight from rankings
ALWAYS_EXCLUDING = {RuleCode.ZERO_ZERO, RuleCode.MIN_VOLUME, RuleCode.REPEATED_MATCHUP}


@dataclass
class ValidationResult:
    passed: bool
    rule_code: RuleCode
    rule_name: str
    message: str
    metadata: dict[str, Any] | None = None


@dataclass
class FightValidationResult:
    is_valid: bool
    should_count_for_ranking: bool
    recommended_status: FightStatus
    violations: list[ValidationResult]
    all_checks: list[ValidationResult]


@dataclass
class FightDataForValidation:
    fight: Fight
    participants: list[FightParticipant]
    trades: list[FightTrade] = field(default_factory=list)
    sessions: list[FightSession] = field(default_factory=list)

    def slot(self, slot: str) -> FightParticipant | None:
        return next((p for p in self.participants if p.slot == slot), None)


@dataclass
class MatchmakingCheckResult:
    can_match: bool
    reason: str | None = None
    matchup_count: int | None = None


@dataclass
class AntiCheatSettlement:
    final_status: FightStatus
    winner_id: str | None
    is_draw: bool
    violations: list[ValidationResult]
    decided_by: str


def extract_ip_address(headers: Mapping[str, str]) -> str:
    """Client IP behind Vercel / Cloudflare / nginx proxies."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        # Comma-separated chain, the first hop is the client
        return forwarded.split(",")[0].strip() or "unknown"
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = headers.get(header)
        if value:
            return value
    return "unknown"


def extract_user_agent(headers: Mapping[str, str]) -> str | None:
    return headers.get("user-agent")


def participant_notional(trades: list[FightTrade], user_id: str) -> float:
    return sum(t.amount * t.price for t in trades if t.participant_user_id == user_id)


def _result(code: RuleCode, passed: bool, message: str, metadata: dict | None = None) -> ValidationResult:
    return ValidationResult(
        passed=passed,
        rule_code=code,
        rule_name=RULE_NAMES[code],
        message=message,
        metadata=metadata,
    )


def _skip(code: RuleCode) -> ValidationResult:
    return _result(code, True, "Missing participant data, skipping check")


class AntiCheatService:
    """Runs the anti-cheat rules for a fight and records violations."""

    def __init__(self, engine: Engine, config: Settings = settings):
        self.engine = engine
        self.config = config

    @property
    def _window(self) -> timedelta:
        return timedelta(hours=self.config.anti_cheat_matchup_window_hours)

    # -----------------------------------------------------------------
    # Data loading
    # -----------------------------------------------------------------

    def load_fight_data(self, fight_id: int) -> FightDataForValidation:
        with Session(self.engine) as session:
            fight = session.get(Fight, fight_id)
            if fight is None:
                raise LookupError(f"Fight {fight_id} not found")
            participants = session.exec(
                select(FightParticipant)
                .where(FightParticipant.fight_id == fight_id)
                .order_by(FightParticipant.slot)
            ).all()
            trades = session.exec(
                select(FightTrade)
                .where(FightTrade.fight_id == fight_id)
                .order_by(FightTrade.executed_at, FightTrade.id)
            ).all()
            sessions = session.exec(
                select(FightSession).where(FightSession.fight_id == fight_id)
            ).all()
        return FightDataForValidation(
            fight=fight,
            participants=list(participants),
            trades=list(trades),
            sessions=list(sessions),
        )

    # -----------------------------------------------------------------
    # Rules
    # -----------------------------------------------------------------

    def validate_zero_zero(self, data: FightDataForValidation) -> ValidationResult:
        a, b = data.slot("A"), data.slot("B")
        if a is None or b is None:
            return _skip(RuleCode.ZERO_ZERO)

        threshold = self.config.anti_cheat_zero_pnl_threshold_usdc
        pnl_a = a.final_score_usdc or 0.0
        pnl_b = b.final_score_usdc or 0.0
        trades_a = a.trades_count or 0
        trades_b = b.trades_count or 0

        both_flat = abs(pnl_a) <= threshold and abs(pnl_b) <= threshold
        no_trades = trades_a == 0 and trades_b == 0

        if both_flat or no_trades:
            if no_trades:
                message = "Both players made 0 trades - fight excluded"
            else:
                message = (
                    f"Both players have near-zero PnL (A: ${pnl_a:.2f}, B: ${pnl_b:.2f}) - fight excluded"
                )
            return _result(RuleCode.ZERO_ZERO, False, message, {
                "pnl_a": pnl_a,
                "pnl_b": pnl_b,
                "trades_a": trades_a,
                "trades_b": trades_b,
                "threshold": threshold,
            })
        return _result(RuleCode.ZERO_ZERO, True, "At least one player has meaningful activity")

    def validate_min_volume(self, data: FightDataForValidation) -> ValidationResult:
        a, b = data.slot("A"), data.slot("B")
        if a is None or b is None:
            return _skip(RuleCode.MIN_VOLUME)

        min_notional = self.config.anti_cheat_min_notional_per_player
        notional_a = participant_notional(data.trades, a.user_id)
        notional_b = participant_notional(data.trades, b.user_id)
        failed = [p.user_id for p, n in ((a, notional_a), (b, notional_b)) if n < min_notional]

        if failed:
            return _result(
                RuleCode.MIN_VOLUME,
                False,
                f"Insufficient trading volume - A: ${notional_a:.2f}, B: ${notional_b:.2f} "
                f"(minimum: ${min_notional:g})",
                {
                    "notional_a": notional_a,
                    "notional_b": notional_b,
                    "min_notional": min_notional,
                    "failed_user_ids": failed,
                },
            )
        return _result(
            RuleCode.MIN_VOLUME,
            True,
            f"Both players meet minimum volume (A: ${notional_a:.2f}, B: ${notional_b:.2f})",
        )

    def _count_matchups(
        self,
        user_a: str,
        user_b: str,
        statuses: list[FightStatus],
        exclude_fight_id: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Fights between exactly these two users that started inside the window."""
        window_start = (now or utcnow()) - self._window
        stmt = (
            select(FightParticipant.fight_id, FightParticipant.user_id)
            .join(Fight, Fight.id == FightParticipant.fight_id)
            .where(
                Fight.status.in_(statuses),  # type: ignore[attr-defined]
                Fight.started_at >= window_start,
                FightParticipant.user_id.in_([user_a, user_b]),  # type: ignore[attr-defined]
            )
        )
        if exclude_fight_id is not None:
            stmt = stmt.where(Fight.id != exclude_fight_id)

        with Session(self.engine) as session:
            rows = session.exec(stmt).all()

        users_by_fight: dict[int, set[str]] = {}
        for fight_id, user_id in rows:
            users_by_fight.setdefault(fight_id, set()).add(user_id)
        return sum(1 for users in users_by_fight.values() if users == {user_a, user_b})

    def validate_repeated_matchup(self, data: FightDataForValidation, now: datetime | None = None) -> ValidationResult:
        a, b = data.slot("A"), data.slot("B")
        if a is None or b is None:
            return _skip(RuleCode.REPEATED_MATCHUP)

        max_matchups = self.config.anti_cheat_max_matchups_per_24h
        window_hours = self.config.anti_cheat_matchup_window_hours
        previous = self._count_matchups(
            a.user_id,
            b.user_id,
            [FightStatus.FINISHED, FightStatus.NO_CONTEST],
            exclude_fight_id=data.fight.id,
            now=now,
        )
        # This fight counts too
        total = previous + 1

        if previous >= max_matchups - 1:
            return _result(
                RuleCode.REPEATED_MATCHUP,
                False,
                f"Users have fought {total} times in {window_hours:g}h (max: {max_matchups})",
                {
                    "user_a_id": a.user_id,
                    "user_b_id": b.user_id,
                    "matchup_count": total,
                    "max_matchups": max_matchups,
                    "window_hours": window_hours,
                },
            )
        return _result(
            RuleCode.REPEATED_MATCHUP,
            True,
            f"Matchup count OK ({total}/{max_matchups} in {window_hours:g}h)",
        )

    def validate_same_ip_pattern(self, data: FightDataForValidation, now: datetime | None = None) -> ValidationResult:
        if not data.sessions:
            return _result(RuleCode.SAME_IP_PATTERN, True, "No session data available")

        a, b = data.slot("A"), data.slot("B")
        if a is None or b is None:
            return _skip(RuleCode.SAME_IP_PATTERN)

        ips_a = {s.ip_address for s in data.sessions if s.user_id == a.user_id}
        ips_b = {s.ip_address for s in data.sessions if s.user_id == b.user_id}
        shared_ips = sorted((ips_a & ips_b) - {"unknown"})

        if not shared_ips:
            return _result(RuleCode.SAME_IP_PATTERN, True, "No IP overlap detected")

        window_start = (now or utcnow()) - self._window
        with Session(self.engine) as session:
            rows = session.exec(
                select(FightSession.fight_id, FightSession.user_id).where(
                    FightSession.ip_address.in_(shared_ips),  # type: ignore[attr-defined]
                    FightSession.created_at >= window_start,
                    FightSession.fight_id != data.fight.id,
                )
            ).all()

        users_by_fight: dict[int, set[str]] = {}
        for fight_id, user_id in rows:
            users_by_fight.setdefault(fight_id, set()).add(user_id)
        previous = sum(
            1 for users in users_by_fight.values() if a.user_id in users and b.user_id in users
        )
        threshold = self.config.anti_cheat_ip_same_pair_threshold
        metadata = {
            "shared_ips": shared_ips,
            "previous_same_ip_fights": previous,
            "same_ip_matchup_count": previous + 1,
            "threshold": threshold,
            "user_a_id": a.user_id,
            "user_b_id": b.user_id,
        }

        if previous >= threshold:
            return _result(
                RuleCode.SAME_IP_PATTERN,
                False,
                f"Suspicious pattern: Same IP ({shared_ips[0]}) used by both players in {previous + 1} fights",
                metadata,
            )

        # First offenses are only flagged for review
        metadata["warning"] = True
        return _result(
            RuleCode.SAME_IP_PATTERN,
            True,
            f"Warning: Both players connected from same IP ({shared_ips[0]}) - flagged for review",
            metadata,
        )

    def validate_external_trades(self, data: FightDataForValidation) -> ValidationResult:
        violators = [p for p in data.participants if p.external_trades_detected]
        if violators:
            return _result(
                RuleCode.EXTERNAL_TRADES,
                False,
                f"External trades detected for {len(violators)} participant(s)",
                {
                    "violator_user_ids": [p.user_id for p in violators],
                    "external_trade_ids": [tid for p in violators for tid in (p.external_trade_ids or [])],
                },
            )
        return _result(RuleCode.EXTERNAL_TRADES, True, "No external trades detected")

    # -----------------------------------------------------------------
    # Aggregation
    # -----------------------------------------------------------------

    def is_excluding(self, violation: ValidationResult) -> bool:
        """Whether a failed check removes the fight from rankings."""
        if violation.passed:
            return False
        if violation.rule_code in ALWAYS_EXCLUDING:
            return True
        if violation.rule_code == RuleCode.SAME_IP_PATTERN:
            previous = (violation.metadata or {}).get("previous_same_ip_fights", 0)
            return previous >= self.config.anti_cheat_ip_same_pair_threshold
        return False

    async def _run_checks(self, data: FightDataForValidation) -> FightValidationResult:
        validators = [
            self.validate_zero_zero,
            self.validate_min_volume,
            self.validate_repeated_matchup,
            self.validate_same_ip_pattern,
            self.validate_external_trades,
        ]
        # Read-only and independent; each DB-backed rule opens its own session
        results = list(await asyncio.gather(*(asyncio.to_thread(v, data) for v in validators)))

        violations = [r for r in results if not r.passed]
        excluding = [v for v in violations if self.is_excluding(v)]
        return FightValidationResult(
            is_valid=not violations,
            should_count_for_ranking=not excluding,
            recommended_status=FightStatus.NO_CONTEST if excluding else FightStatus.FINISHED,
            violations=violations,
            all_checks=results,
        )

    async def validate_fight_for_settlement(self, fight_id: int) -> FightValidationResult:
        data = self.load_fight_data(fight_id)
        return await self._run_checks(data)

    async def settle_fight_with_anti_cheat(
        self,
        fight_id: int,
        determined_winner_id: str | None,
        is_draw: bool,
    ) -> AntiCheatSettlement:
        """Validate the fight, record violations, and decide final status / winner."""
        data = self.load_fight_data(fight_id)
        validation = await self._run_checks(data)

        action = ViolationAction.FLAGGED if validation.should_count_for_ranking else ViolationAction.NO_CONTEST
        if validation.violations:
            with Session(self.engine) as session:
                for violation in validation.violations:
                    self._add_violation(session, fight_id, violation, action)
                session.commit()
            logger.warning(
                f"[anti_cheat] Fight {fight_id} violations: "
                f"{', '.join(v.rule_code.value for v in validation.violations)} ({action.value})"
            )

        external_ids: set[str] = set()
        min_volume_failed: set[str] = set()
        for v in validation.violations:
            if v.rule_code == RuleCode.EXTERNAL_TRADES:
                external_ids.update(v.metadata.get("violator_user_ids", []))
            elif v.rule_code == RuleCode.MIN_VOLUME:
                min_volume_failed.update(v.metadata.get("failed_user_ids", []))

        outcome = adjudicate(AdjudicationContext(
            participant_ids=[p.user_id for p in data.participants],
            determined_winner_id=determined_winner_id,
            is_draw=is_draw,
            should_count_for_ranking=validation.should_count_for_ranking,
            external_trade_user_ids=external_ids,
            min_volume_failed_user_ids=min_volume_failed,
        ))
        if outcome.winner_id != determined_winner_id or outcome.final_status != FightStatus.FINISHED:
            logger.info(
                f"[anti_cheat] Fight {fight_id} outcome overridden by {outcome.rule}: "
                f"{outcome.final_status.value}, winner={outcome.winner_id}"
            )

        return AntiCheatSettlement(
            final_status=outcome.final_status,
            winner_id=outcome.winner_id,
            is_draw=outcome.is_draw,
            violations=validation.violations,
            decided_by=outcome.rule,
        )

    # -----------------------------------------------------------------
    # Matchmaking, sessions, audit log
    # -----------------------------------------------------------------

    def can_users_match(self, user_a: str, user_b: str, now: datetime | None = None) -> MatchmakingCheckResult:
        """Pre-matchmaking check; LIVE fights count as well."""
        max_matchups = self.config.anti_cheat_max_matchups_per_24h
        window_hours = self.config.anti_cheat_matchup_window_hours
        count = self._count_matchups(
            user_a,
            user_b,
            [FightStatus.FINISHED, FightStatus.NO_CONTEST, FightStatus.LIVE],
            now=now,
        )
        if count >= max_matchups:
            return MatchmakingCheckResult(
                can_match=False,
                reason=f"Matchup limit exceeded: {count}/{max_matchups} in {window_hours:g}h",
                matchup_count=count,
            )
        return MatchmakingCheckResult(can_match=True, matchup_count=count)

    def record_fight_session(
        self,
        fight_id: int,
        user_id: str,
        ip_address: str,
        user_agent: str | None,
        session_type: str,
    ) -> FightSession:
        if session_type not in ("join", "trade"):
            raise ValueError(f"Unknown session type: {session_type}")
        record = FightSession(
            fight_id=fight_id,
            user_id=user_id,
            ip_address=ip_address or "unknown",
            user_agent=user_agent,
            session_type=session_type,
        )
        with Session(self.engine) as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        return record

    def _add_violation(self, session: Session, fight_id: int, violation: ValidationResult, action: ViolationAction):
        session.add(AntiCheatViolation(
            fight_id=fight_id,
            rule_code=violation.rule_code.value,
            rule_name=violation.rule_name,
            rule_message=violation.message,
            metadata_json=violation.metadata or {},
            action_taken=action.value,
        ))

    def log_violation(self, fight_id: int, violation: ValidationResult, action: ViolationAction):
        with Session(self.engine) as session:
            self._add_violation(session, fight_id, violation, action)
            session.commit()

    def list_violations(
        self,
        fight_id: int | None = None,
        rule_code: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AntiCheatViolation]:
        stmt = select(AntiCheatViolation).order_by(AntiCheatViolation.created_at.desc())  # type: ignore[attr-defined]
        if fight_id is not None:
            stmt = stmt.where(AntiCheatViolation.fight_id == fight_id)
        if rule_code is not None:
            stmt = stmt.where(AntiCheatViolation.rule_code == rule_code)
        with Session(self.engine) as session:
            return list(session.exec(stmt.offset(offset).limit(limit)).all())

    def violation_stats(self) -> dict:
        with Session(self.engine) as session:
            by_rule = session.exec(
                select(AntiCheatViolation.rule_code, func.count()).group_by(AntiCheatViolation.rule_code)
            ).all()
            by_action = session.exec(
                select(AntiCheatViolation.action_taken, func.count()).group_by(AntiCheatViolation.action_taken)
            ).all()
            no_contest_fights = session.exec(
                select(func.count()).select_from(Fight).where(Fight.status == FightStatus.NO_CONTEST)
            ).one()
        by_rule_map = {code: count for code, count in by_rule}
        return {
            "total_violations": sum(by_rule_map.values()),
            "by_rule": by_rule_map,
            "by_action": {action: count for action, count in by_action},
            "no_contest_fights": no_contest_fights,
        }

    def suspicious_users(self, min_violations: int = 2, limit: int = 20, offset: int = 0) -> dict:
        """Users whose fights collected at least min_violations violations, most first.

        A violation counts against both participants of the fight. Admin
        restores are not violations.
        """
        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    FightParticipant.user_id,
                    AntiCheatViolation.rule_code,
                    func.count(AntiCheatViolation.id),
                    func.max(AntiCheatViolation.created_at),
                )
                .join(AntiCheatViolation, AntiCheatViolation.fight_id == FightParticipant.fight_id)
                .where(AntiCheatViolation.action_taken != ViolationAction.RESTORED.value)
                .group_by(FightParticipant.user_id, AntiCheatViolation.rule_code)
            ).all()

        users: dict[str, dict] = {}
        for user_id, rule_code, count, last_at in rows:
            entry = users.setdefault(user_id, {
                "user_id": user_id,
                "violation_count": 0,
                "most_common_rule": None,
                "last_violation": None,
                "violation_breakdown": {},
            })
            entry["violation_count"] += count
            entry["violation_breakdown"][rule_code] = count
            if entry["last_violation"] is None or last_at > entry["last_violation"]:
                entry["last_violation"] = last_at

        suspicious = [u for u in users.values() if u["violation_count"] >= min_violations]
        for entry in suspicious:
            breakdown = entry["violation_breakdown"]
            entry["most_common_rule"] = max(sorted(breakdown), key=lambda code: breakdown[code])
        suspicious.sort(key=lambda u: (-u["violation_count"], u["user_id"]))

        return {
            "users": suspicious[offset:offset + limit],
            "total": len(suspicious),
            "min_violations": min_violations,
        }

    def restore_fight(self, fight_id: int, winner_id: str | None, is_draw: bool, reason: str) -> Fight:
        """Admin override: turn a NO_CONTEST fight back into FINISHED.

        Without an explicit winner or draw the result is decided from the
        participants' final scores.
        """
        with Session(self.engine) as session:
            fight = session.get(Fight, fight_id)
            if fight is None:
                raise LookupError(f"Fight {fight_id} not found")
            if fight.status != FightStatus.NO_CONTEST:
                raise ValueError(f"Fight {fight_id} is {fight.status.value}, only NO_CONTEST fights can be restored")

            participants = session.exec(
                select(FightParticipant)
                .where(FightParticipant.fight_id == fight_id)
                .order_by(FightParticipant.slot)
            ).all()
            if len(participants) != 2:
                raise ValueError(f"Fight {fight_id} does not have two participants")
            if winner_id is not None and winner_id not in {p.user_id for p in participants}:
                raise ValueError(f"User {winner_id} did not take part in fight {fight_id}")
            if winner_id is None and not is_draw:
                a, b = participants
                result = determine_winner(a.user_id, a.final_score_usdc or 0.0, b.user_id, b.final_score_usdc or 0.0)
                winner_id, is_draw = result.winner_id, result.is_draw

            fight.status = FightStatus.FINISHED
            fight.winner_id = None if is_draw else winner_id
            fight.is_draw = is_draw
            session.add(fight)
            session.add(AntiCheatViolation(
                fight_id=fight_id,
                rule_code="ADMIN_RESTORE",
                rule_name="Admin Restore",
                rule_message=reason,
                metadata_json={"winner_id": fight.winner_id, "is_draw": is_draw},
                action_taken=ViolationAction.RESTORED.value,
            ))
            session.commit()
            session.refresh(fight)

        logger.warning(f"[anti_cheat] Fight {fight_id} restored to FINISHED by admin: {reason}")
        return fight
