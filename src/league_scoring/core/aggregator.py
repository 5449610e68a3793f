"""Team aggregator — locked lineup plus entity scores to a TeamScore."""

from __future__ import annotations

import statistics
from typing import Optional

from .errors import LineupNotLockedError
from .models import (
    BonusPenalty,
    EntityScore,
    EntityType,
    Lineup,
    PeriodKind,
    SlotScore,
    SlotStatus,
    TeamScore,
)

EntityKey = tuple[EntityType, int]

PERFECT_WEEK_BONUS = 50
PERFECT_WEEK_MEDIAN_SHARE = 0.75

DIVERSITY_BONUS = 30
DIVERSITY_MIN_SHARE = 0.18
DIVERSITY_MAX_SHARE = 0.32
DIVERSITY_CATEGORIES = (
    EntityType.MANUFACTURER,
    EntityType.STRAIN,
    EntityType.PRODUCT,
    EntityType.PHARMACY,
)

MOMENTUM_BONUS = 20
MOMENTUM_MIN_CLIMBERS = 3

# Daily challenge format
TREND_EXPLOSION_BONUS = 25
TREND_EXPLOSION_GROWTH = 50
TREND_EXPLOSION_MIN = 3
DARK_HORSE_BONUS = 20
DARK_HORSE_RANK_ABOVE = 10
DARK_HORSE_MIN_CLIMB = 5
HOT_STREAK_BONUS = 15
HOT_STREAK_MIN_STREAK = 2
HOT_STREAK_MIN = 3

# Weekly season format
MARKET_LEADER_BONUS = 25
MARKET_LEADER_TOP_RANK = 3
MARKET_LEADER_MIN = 3
CONSISTENCY_KING_BONUS = 20
CONSISTENCY_KING_MIN_STREAK = 3
CONSISTENCY_KING_MIN = 5
STEADY_CLIMB_BONUS = 15


def resolve_slots(
    lineup: Lineup,
    scores: dict[EntityKey, EntityScore],
    failures: Optional[dict[EntityKey, str]] = None,
) -> list[SlotScore]:
    """One SlotScore per position, in lineup order. Nothing is dropped."""
    failures = failures or {}
    slots: list[SlotScore] = []
    for position, slot in lineup.slot_map().items():
        if slot.is_empty:
            slots.append(SlotScore(position=position, status=SlotStatus.EMPTY, note="empty"))
            continue

        key = (slot.entity_type, slot.entity_id)
        fixed = position.fixed_type
        if fixed is not None and fixed != slot.entity_type:
            note = f"{slot.entity_type.value} cannot fill {position.value}"
        elif key in scores:
            score = scores[key]
            slots.append(SlotScore(
                position=position,
                status=SlotStatus.SCORED,
                entity_id=slot.entity_id,
                entity_type=slot.entity_type,
                points=score.total_points,
                entity_score=score,
            ))
            continue
        else:
            note = failures.get(key, "no score for this period")

        slots.append(SlotScore(
            position=position,
            status=SlotStatus.UNSCORED,
            entity_id=slot.entity_id,
            entity_type=slot.entity_type,
            note=note,
        ))
    return slots


def perfect_week(slots: list[SlotScore]) -> Optional[BonusPenalty]:
    if any(s.status != SlotStatus.SCORED for s in slots):
        return None
    points = [s.points for s in slots]
    median = statistics.median(points)
    floor = median * PERFECT_WEEK_MEDIAN_SHARE
    if all(p > 0 and p >= floor for p in points):
        return BonusPenalty(
            type="Perfect Week",
            condition=f"every starter scored at least {floor:.1f} ({int(PERFECT_WEEK_MEDIAN_SHARE * 100)}% of median)",
            points=PERFECT_WEEK_BONUS,
        )
    return None


def category_shares(slots: list[SlotScore]) -> dict[EntityType, float]:
    total = sum(s.points for s in slots)
    if total <= 0:
        return {}
    by_type: dict[EntityType, float] = {t: 0.0 for t in DIVERSITY_CATEGORIES}
    for s in slots:
        if s.status == SlotStatus.SCORED and s.entity_type in by_type:
            by_type[s.entity_type] += s.points
    return {t: v / total for t, v in by_type.items()}


def position_diversity(slots: list[SlotScore]) -> Optional[BonusPenalty]:
    shares = category_shares(slots)
    if not shares:
        return None
    if all(DIVERSITY_MIN_SHARE <= share <= DIVERSITY_MAX_SHARE for share in shares.values()):
        return BonusPenalty(
            type="Position Diversity",
            condition=(
                f"every category between {int(DIVERSITY_MIN_SHARE * 100)}% "
                f"and {int(DIVERSITY_MAX_SHARE * 100)}% of team points"
            ),
            points=DIVERSITY_BONUS,
        )
    return None


def momentum_master(entities: list[EntityScore]) -> Optional[BonusPenalty]:
    climbers = [e for e in entities if (e.rank_delta or 0) > 0]
    if len(climbers) >= MOMENTUM_MIN_CLIMBERS:
        return BonusPenalty(
            type="Momentum Master",
            condition=f"{len(climbers)} starters improved their rank",
            points=MOMENTUM_BONUS,
        )
    return None


def daily_format_bonus(entities: list[EntityScore]) -> Optional[BonusPenalty]:
    exploding = [e for e in entities if (e.growth_percent or 0) >= TREND_EXPLOSION_GROWTH]
    if len(exploding) >= TREND_EXPLOSION_MIN:
        return BonusPenalty(
            type="Trend Explosion",
            condition=f"{len(exploding)} starters grew {TREND_EXPLOSION_GROWTH}%+",
            points=TREND_EXPLOSION_BONUS,
        )

    for e in entities:
        if e.rank is not None and e.rank > DARK_HORSE_RANK_ABOVE and (e.rank_delta or 0) >= DARK_HORSE_MIN_CLIMB:
            return BonusPenalty(
                type="Dark Horse",
                condition=f"{e.entity_type.value} {e.entity_id} climbed {e.rank_delta} to #{e.rank}",
                points=DARK_HORSE_BONUS,
            )

    streaking = [e for e in entities if e.streak >= HOT_STREAK_MIN_STREAK]
    if len(streaking) >= HOT_STREAK_MIN:
        return BonusPenalty(
            type="Hot Streak",
            condition=f"{len(streaking)} starters on a streak",
            points=HOT_STREAK_BONUS,
        )
    return None


def weekly_format_bonus(entities: list[EntityScore]) -> Optional[BonusPenalty]:
    leaders = [e for e in entities if e.rank is not None and e.rank <= MARKET_LEADER_TOP_RANK]
    if len(leaders) >= MARKET_LEADER_MIN:
        return BonusPenalty(
            type="Market Leader",
            condition=f"{len(leaders)} starters ranked top {MARKET_LEADER_TOP_RANK}",
            points=MARKET_LEADER_BONUS,
        )

    consistent = [e for e in entities if e.streak >= CONSISTENCY_KING_MIN_STREAK]
    if len(consistent) >= CONSISTENCY_KING_MIN:
        return BonusPenalty(
            type="Consistency King",
            condition=f"{len(consistent)} starters on a {CONSISTENCY_KING_MIN_STREAK}+ period streak",
            points=CONSISTENCY_KING_BONUS,
        )

    deltas = [e.rank_delta for e in entities if e.rank_delta is not None]
    if deltas and all(d >= 0 for d in deltas) and any(d > 0 for d in deltas):
        return BonusPenalty(
            type="Steady Climb",
            condition="no starter lost rank",
            points=STEADY_CLIMB_BONUS,
        )
    return None


def team_bonuses(slots: list[SlotScore], kind: PeriodKind) -> list[BonusPenalty]:
    entities = [s.entity_score for s in slots if s.entity_score is not None]
    format_bonus = daily_format_bonus if kind == PeriodKind.DAILY else weekly_format_bonus
    candidates = [
        perfect_week(slots),
        position_diversity(slots),
        momentum_master(entities),
        format_bonus(entities),
    ]
    return [b for b in candidates if b is not None]


def aggregate_team(
    lineup: Lineup,
    scores: dict[EntityKey, EntityScore],
    failures: Optional[dict[EntityKey, str]] = None,
) -> TeamScore:
    """Sum a locked lineup's slot scores and apply team bonuses.

    Raises:
        LineupNotLockedError: the lineup can still change.
    """
    if not lineup.is_locked:
        raise LineupNotLockedError(lineup.team_id, lineup.period)

    slots = resolve_slots(lineup, scores, failures)
    bonuses = team_bonuses(slots, lineup.period.kind)
    slot_points = round(sum(s.points for s in slots), 1)
    bonus_points = round(sum(b.points for b in bonuses), 1)
    return TeamScore(
        team_id=lineup.team_id,
        period=lineup.period,
        slots=slots,
        team_bonuses=bonuses,
        slot_points=slot_points,
        bonus_points=bonus_points,
        total_points=round(slot_points + bonus_points, 1),
    )
