"""Settlement adjudication policy.

Turns anti-cheat results plus the score-based outcome into the final fight
status and winner. Rules are evaluated in order and the first one that
matches decides:

  1. external trades by both participants       -> NO_CONTEST
  2. external trades by one, opponent low volume -> NO_CONTEST
  3. external trades by one                      -> FINISHED, opponent wins
  4. any ranking-excluding violation             -> NO_CONTEST
  5. otherwise                                   -> FINISHED, score-based result
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from fightclub.models.fight import FightStatus


@dataclass
class AdjudicationContext:
    participant_ids: list[str]
    determined_winner_id: str | None
    is_draw: bool
    should_count_for_ranking: bool
    external_trade_user_ids: set[str] = field(default_factory=set)
    min_volume_failed_user_ids: set[str] = field(default_factory=set)

    @property
    def honest_participant_ids(self) -> list[str]:
        return [uid for uid in self.participant_ids if uid not in self.external_trade_user_ids]


@dataclass
class AdjudicationOutcome:
    final_status: FightStatus
    winner_id: str | None
    is_draw: bool
    rule: str


AdjudicationRule = Callable[[AdjudicationContext], AdjudicationOutcome | None]


def both_external_traders(ctx: AdjudicationContext) -> AdjudicationOutcome | None:
    if ctx.external_trade_user_ids and not ctx.honest_participant_ids:
        return AdjudicationOutcome(FightStatus.NO_CONTEST, None, False, "both_external_traders")
    return None


def external_trader_vs_low_volume(ctx: AdjudicationContext) -> AdjudicationOutcome | None:
    if not ctx.external_trade_user_ids:
        return None
    honest = ctx.honest_participant_ids
    if len(honest) == 1 and honest[0] in ctx.min_volume_failed_user_ids:
        return AdjudicationOutcome(FightStatus.NO_CONTEST, None, False, "external_trader_vs_low_volume")
    return None


def disqualify_external_trader(ctx: AdjudicationContext) -> AdjudicationOutcome | None:
    if not ctx.external_trade_user_ids:
        return None
    honest = ctx.honest_participant_ids
    if len(honest) == 1:
        return AdjudicationOutcome(FightStatus.FINISHED, honest[0], False, "disqualify_external_trader")
    return None


def excluded_from_ranking(ctx: AdjudicationContext) -> AdjudicationOutcome | None:
    if not ctx.should_count_for_ranking:
        return AdjudicationOutcome(FightStatus.NO_CONTEST, None, False, "excluded_from_ranking")
    return None


def score_result(ctx: AdjudicationContext) -> AdjudicationOutcome:
    return AdjudicationOutcome(FightStatus.FINISHED, ctx.determined_winner_id, ctx.is_draw, "score_result")


ADJUDICATION_RULES: list[AdjudicationRule] = [
    both_external_traders,
    external_trader_vs_low_volume,
    disqualify_external_trader,
    excluded_from_ranking,
    score_result,
]


def adjudicate(ctx: AdjudicationContext, rules: list[AdjudicationRule] | None = None) -> AdjudicationOutcome:
    for rule in rules or ADJUDICATION_RULES:
        outcome = rule(ctx)
        if outcome is not None:
            return outcome
    return score_result(ctx)
