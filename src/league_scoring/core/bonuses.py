"""Bonus/penalty evaluator — modifiers that need rank and streak context.

Formula bonuses come first, then rank, streak, consistency and decline.
The scarcity adjustment is appended last by :mod:`.scarcity`.
"""

from __future__ import annotations

from typing import Optional

from .formulas import apply_formula
from .models import BonusPenalty, EntityScore, EntityType, NormalizedMetrics
from .scarcity import apply_scarcity

# (best rank, worst rank, points), mutually exclusive
RANK_TIERS = [
    (1, 1, 30),
    (2, 3, 20),
    (4, 5, 15),
    (6, 10, 10),
]

STREAK_MIN = 2
STREAK_POINTS_PER_PERIOD = 2
STREAK_POINTS_CAP = 15

# (minimum streak, label), checked top-down; labels are display-only
STREAK_TIERS = [
    (21, "God Mode"),
    (14, "Legendary"),
    (7, "Unstoppable"),
    (4, "On Fire"),
    (2, "Hot Streak"),
]

DECLINE_THRESHOLD = 4
DECLINE_PENALTY = -15
CONSISTENCY_BONUS = 10

# Types whose base formula already pays for a rank climb.
RANK_SCORED_TYPES = frozenset({EntityType.MANUFACTURER})


def rank_bonus(rank: Optional[int]) -> Optional[BonusPenalty]:
    if rank is None:
        return None
    for best, worst, points in RANK_TIERS:
        if best <= rank <= worst:
            label = "1st" if best == worst else f"{best}-{worst}"
            return BonusPenalty(type="Rank Bonus", condition=f"Finished #{rank} ({label})", points=points)
    return None


def streak_tier(streak: int) -> Optional[str]:
    for minimum, label in STREAK_TIERS:
        if streak >= minimum:
            return label
    return None


def streak_bonus(streak: int) -> Optional[BonusPenalty]:
    if streak < STREAK_MIN:
        return None
    points = min(STREAK_POINTS_CAP, STREAK_POINTS_PER_PERIOD * streak)
    return BonusPenalty(
        type="Streak Bonus",
        condition=f"{streak_tier(streak)}: {streak} periods in a row",
        points=points,
    )


def consistency_bonus(m: NormalizedMetrics) -> Optional[BonusPenalty]:
    if m.entity_type in RANK_SCORED_TYPES or m.rank_delta is None:
        return None
    if (m.growth_percent or 0) > 0 and m.rank_delta > 0:
        return BonusPenalty(
            type="Consistency",
            condition=f"+{m.growth_percent:g}% growth and up {m.rank_delta} ranks",
            points=CONSISTENCY_BONUS,
        )
    return None


def decline_penalty(rank_delta: Optional[int]) -> Optional[BonusPenalty]:
    if rank_delta is None or rank_delta > -DECLINE_THRESHOLD:
        return None
    return BonusPenalty(
        type="Decline Penalty",
        condition=f"Dropped {abs(rank_delta)} ranks",
        points=DECLINE_PENALTY,
    )


def evaluate_bonuses(m: NormalizedMetrics) -> list[BonusPenalty]:
    """Context modifiers for one entity. Rank-delta rules are skipped for new entities."""
    candidates = [
        rank_bonus(m.rank),
        streak_bonus(m.streak),
        consistency_bonus(m),
        decline_penalty(m.rank_delta),
    ]
    return [b for b in candidates if b is not None]


def score_entity(m: NormalizedMetrics, multiplier: float = 1.0) -> EntityScore:
    """Full entity score: formula, context modifiers, then scarcity."""
    components, formula_bonuses = apply_formula(m)
    score = EntityScore(
        entity_id=m.entity_id,
        entity_type=m.entity_type,
        period=m.period,
        components=components,
        bonuses=formula_bonuses + evaluate_bonuses(m),
        rank=m.rank,
        rank_delta=m.rank_delta,
        streak=m.streak,
        growth_percent=m.growth_percent,
    ).recompute_total()
    return apply_scarcity(score, multiplier)
