"""Metric normalizer — raw stats rows to formula inputs.

Buckets volumes into named tiers, clamps growth percentages and derives the
trend multiplier. Output is recomputed on every run and never cached.
"""

from __future__ import annotations

import math
from typing import Optional

from .errors import InvalidSnapshotError
from .models import EntityType, NormalizedMetrics, StatSnapshot

GROWTH_FLOOR = -100.0

REQUIRED_METRICS: dict[EntityType, tuple[str, ...]] = {
    EntityType.MANUFACTURER: ("sales_volume_grams", "growth_rate_percent", "product_count"),
    EntityType.STRAIN: (
        "total_favorites",
        "pharmacy_count",
        "product_count",
        "price_change_percent",
        "market_penetration_percent",
    ),
    EntityType.PRODUCT: ("order_count", "price_change_percent"),
    EntityType.PHARMACY: (
        "revenue_cents",
        "order_count",
        "avg_order_size_grams",
        "customer_retention_rate",
        "product_variety",
    ),
    EntityType.BRAND: ("favorites", "views", "comments", "affiliate_clicks"),
}

# Metrics that may legitimately go negative; every other counter must be >= 0.
SIGNED_METRICS = frozenset({
    "growth_rate_percent",
    "price_change_percent",
    "favorite_growth",
    "view_growth",
    "comment_growth",
    "click_growth",
    "sentiment_score",
})

GROWTH_METRICS = frozenset({"growth_rate_percent"})

# Categorical metrics; everything else must be numeric.
LABEL_METRICS = frozenset({"price_category"})

PRIMARY_VOLUME: dict[EntityType, str] = {
    EntityType.MANUFACTURER: "sales_volume_grams",
    EntityType.STRAIN: "total_favorites",
    EntityType.PRODUCT: "order_count",
    EntityType.PHARMACY: "order_count",
    EntityType.BRAND: "views",
}

# (lower bound, label, points), checked top-down
SUPPLY_TIERS = [
    (50_000, "Powerhouse", 5),
    (10_000, "High", 3),
    (2_000, "Steady", 2),
    (0, "Emerging", 1),
]

DEMAND_TIERS = [
    (100, "Blockbuster", 20),
    (50, "Popular", 12),
    (20, "Steady", 6),
    (5, "Niche", 2),
    (0, "Dormant", 0),
]

ORDER_SIZE_TIERS = [
    (20, "Bulk", 6),
    (10, "Large", 4),
    (5, "Standard", 2),
    (0, "Small", 0),
]

TREND_MIN = 0.1
TREND_MAX = 5.0


def bucket(value: float, tiers: list[tuple[float, str, int]]) -> tuple[str, int]:
    """Return the (label, points) of the first tier whose lower bound value reaches."""
    for lower, label, points in tiers:
        if value >= lower:
            return label, points
    lower, label, points = tiers[-1]
    return label, points


def clamp_growth(value: float) -> float:
    return max(GROWTH_FLOOR, value)


def trend_multiplier(days1: float, days7: float) -> float:
    """Current-day volume relative to the trailing seven-day average."""
    current = max(days1, 0.0)
    trailing = max(days7, 0.0)
    if current == 0 and trailing == 0:
        return 1.0
    average = trailing / 7
    if average == 0:
        # brand-new entities with only current-day volume
        return TREND_MAX
    return min(max(current / average, TREND_MIN), TREND_MAX)


def normalize(snapshot: StatSnapshot) -> NormalizedMetrics:
    """Validate a snapshot and derive the inputs its formula needs.

    Raises:
        InvalidSnapshotError: a required metric is missing or null, a value
            is not a finite number, a numeric metric arrives as text, or a
            counter is negative.
    """
    entity_type = snapshot.entity_type
    raw = snapshot.metrics

    missing = [name for name in REQUIRED_METRICS[entity_type] if raw.get(name) is None]
    if missing:
        raise InvalidSnapshotError(
            entity_type, snapshot.entity_id, f"missing required metrics: {', '.join(missing)}",
        )

    values: dict[str, float] = {}
    labels: dict[str, str] = {}
    for name, value in raw.items():
        if value is None:
            continue
        if name in LABEL_METRICS:
            labels[name] = str(value)
            continue
        if isinstance(value, (str, bool)):
            raise InvalidSnapshotError(entity_type, snapshot.entity_id, f"{name} is not numeric")
        number = float(value)
        if not math.isfinite(number):
            raise InvalidSnapshotError(entity_type, snapshot.entity_id, f"{name} is not a finite number")
        if number < 0 and name not in SIGNED_METRICS:
            raise InvalidSnapshotError(entity_type, snapshot.entity_id, f"{name} is negative ({number})")
        if name in GROWTH_METRICS:
            number = clamp_growth(number)
        values[name] = number

    growth: Optional[float] = values.get("growth_rate_percent")
    tier, tier_points = _tier_for(entity_type, values)

    trend = 1.0
    if entity_type == EntityType.PRODUCT and "days1_volume" in values:
        trend = trend_multiplier(values["days1_volume"], values.get("days7_volume", 0.0))

    volume = values.get(PRIMARY_VOLUME[entity_type], 0.0)

    return NormalizedMetrics(
        entity_id=snapshot.entity_id,
        entity_type=entity_type,
        period=snapshot.period,
        rank=snapshot.rank,
        rank_delta=snapshot.rank_delta,
        streak=snapshot.streak,
        growth_percent=growth,
        tier=tier,
        tier_points=tier_points,
        trend_multiplier=round(trend, 3),
        log_volume=round(math.log10(1 + volume), 4),
        values=values,
        labels=labels,
    )


def _tier_for(entity_type: EntityType, values: dict[str, float]) -> tuple[Optional[str], int]:
    if entity_type == EntityType.MANUFACTURER:
        return bucket(values["sales_volume_grams"], SUPPLY_TIERS)
    if entity_type == EntityType.PRODUCT:
        return bucket(values["order_count"], DEMAND_TIERS)
    if entity_type == EntityType.PHARMACY:
        return bucket(values["avg_order_size_grams"], ORDER_SIZE_TIERS)
    return None, 0
