"""Scarcity multipliers from asset-pool depth.

Shallow pools are boosted, deep pools damped, around a reference depth of
100. Multipliers are recomputed at the start of every run.
"""

from __future__ import annotations

import math

from .errors import ScarcityComputationError
from .models import BonusPenalty, EntityScore, EntityType

REFERENCE_DEPTH = 100
MULTIPLIER_MIN = 0.65
MULTIPLIER_MAX = 1.35
CALIBRATION_SPREAD = 15.0


def multiplier_for_depth(entity_type: EntityType, depth: int) -> float:
    if depth <= 0:
        raise ScarcityComputationError(entity_type, f"empty asset pool (depth={depth})")
    raw = math.sqrt(REFERENCE_DEPTH / depth)
    return round(min(max(raw, MULTIPLIER_MIN), MULTIPLIER_MAX), 4)


def compute_multipliers(depths: dict[EntityType, int]) -> dict[EntityType, float]:
    """Multiplier per entity type. All or nothing: one bad pool fails the lot."""
    missing = [t for t in EntityType if t not in depths]
    if missing:
        raise ScarcityComputationError(missing[0], "pool depth not computed")
    return {t: multiplier_for_depth(t, depths[t]) for t in EntityType}


def apply_scarcity(score: EntityScore, multiplier: float) -> EntityScore:
    """Scale an entity's total, keeping the breakdown summing to it."""
    score.scarcity_multiplier = multiplier
    if multiplier == 1.0:
        return score
    unscaled = score.total_points
    adjustment = round(round(unscaled * multiplier, 1) - unscaled, 1)
    if adjustment != 0:
        score.bonuses.append(BonusPenalty(
            type="Scarcity Adjustment",
            condition=f"{multiplier:g}x pool multiplier",
            points=adjustment,
        ))
    return score.recompute_total()


def rescale_position(totals: list[float], multiplier: float) -> list[float]:
    """Scale a position's entity totals by its multiplier.

    The rescaled totals sum to ``sum(totals) * multiplier`` within the
    rounding of one decimal place per entity.
    """
    return [round(t * multiplier, 1) for t in totals]


def position_spread(averages: dict[EntityType, float]) -> float:
    """Spread between the best and worst position average."""
    if not averages:
        return 0.0
    return round(max(averages.values()) - min(averages.values()), 1)


def within_calibration(averages: dict[EntityType, float]) -> bool:
    return position_spread(averages) <= CALIBRATION_SPREAD
