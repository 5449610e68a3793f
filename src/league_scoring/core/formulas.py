"""Formula library — one pure scoring function per entity type.

Each formula maps normalized metrics to an ordered list of base components
plus the bonuses and penalties that depend on that entity alone. Caps are
hard clamps: values past a cap add nothing. Component order never changes
between runs, so stored breakdowns diff cleanly.
"""

from __future__ import annotations

import math
from typing import Callable

from .models import BonusPenalty, EntityType, NormalizedMetrics, ScoringComponent

FormulaResult = tuple[list[ScoringComponent], list[BonusPenalty]]

# Manufacturer
MFG_GROWTH_DIVISOR = 5
MFG_RANK_POINTS_PER_PLACE = 8
MFG_RANK_POINTS_CAP = 40
MFG_PRODUCT_POINTS_CAP = 20

# Strain
STRAIN_FAVORITES_DIVISOR = 150
STRAIN_PHARMACY_POINTS = 4
STRAIN_PRODUCT_POINTS = 2
STRAIN_STABLE_PRICE_BAND = 5
STRAIN_STABLE_PRICE_BONUS = 10
STRAIN_VOLATILE_PRICE_BAND = 20
STRAIN_VOLATILITY_PENALTY = -10
STRAIN_MARKET_SHARE_THRESHOLD = 50
STRAIN_MARKET_SHARE_BONUS = 15

# Product
PRODUCT_ORDER_POINTS = 4
PRODUCT_ORDER_POINTS_CAP = 100
PRODUCT_TRENDING_MULTIPLIER = 2.0
PRODUCT_TRENDING_BONUS = 15
PRODUCT_PREMIUM_CATEGORY = "expensive"
PRODUCT_PREMIUM_BONUS = 8
PRODUCT_PRICE_CRASH_THRESHOLD = -20
PRODUCT_PRICE_CRASH_PENALTY = -15

# Pharmacy
PHARMACY_REVENUE_EUROS_PER_POINT = 800
PHARMACY_ORDER_POINTS = 1.5
PHARMACY_ORDER_POINTS_CAP = 60
PHARMACY_RETENTION_BASELINE = 75
PHARMACY_VARIETY_DIVISOR = 20
PHARMACY_HIGH_USAGE_THRESHOLD = 60
PHARMACY_HIGH_USAGE_BONUS = 5
PHARMACY_RETENTION_DROP_THRESHOLD = 50
PHARMACY_RETENTION_DROP_PENALTY = -15

# Brand
BRAND_FAVORITES_DIVISOR = 200
BRAND_FAVORITES_CAP = 30
BRAND_VIEWS_DIVISOR = 2000
BRAND_VIEWS_CAP = 20
BRAND_COMMENT_POINTS = 2
BRAND_COMMENTS_CAP = 15
BRAND_CLICK_POINTS = 0.5
BRAND_CLICKS_CAP = 15
BRAND_MOMENTUM_CAP = 20
BRAND_ENGAGEMENT_TIERS = [(10, 15), (5, 10)]
BRAND_SENTIMENT_FLOOR = -10
BRAND_SENTIMENT_CEILING = 15


def _pts(value: float) -> float:
    return round(value, 1)


def _component(category: str, value, formula: str, points: float) -> ScoringComponent:
    return ScoringComponent(category=category, value=value, formula=formula, points=_pts(points))


def _fmt(value: float) -> str:
    return f"{value:g}"


def score_manufacturer(m: NormalizedMetrics) -> FormulaResult:
    growth = m.values["growth_rate_percent"]
    products = m.values["product_count"]

    components = [
        _component("Supply Tier", m.tier, f"{m.tier} tier", m.tier_points),
        _component(
            "Growth Rate", growth, f"{_fmt(growth)}% ÷ {MFG_GROWTH_DIVISOR}",
            math.floor(growth / MFG_GROWTH_DIVISOR),
        ),
    ]

    if m.rank_delta is None:
        components.append(_component("Rank Improvement", None, "no prior period", 0))
    else:
        climbed = max(m.rank_delta, 0)
        components.append(_component(
            "Rank Improvement", climbed,
            f"{climbed} ranks × {MFG_RANK_POINTS_PER_PLACE} (cap {MFG_RANK_POINTS_CAP})",
            min(climbed * MFG_RANK_POINTS_PER_PLACE, MFG_RANK_POINTS_CAP),
        ))

    components.append(_component(
        "Product Diversity", products, f"{_fmt(products)} products × 1 (cap {MFG_PRODUCT_POINTS_CAP})",
        min(products, MFG_PRODUCT_POINTS_CAP),
    ))
    return components, []


def score_strain(m: NormalizedMetrics) -> FormulaResult:
    favorites = m.values["total_favorites"]
    pharmacies = m.values["pharmacy_count"]
    products = m.values["product_count"]
    price_change = m.values["price_change_percent"]
    penetration = m.values["market_penetration_percent"]

    components = [
        _component(
            "Aggregate Favorites", favorites, f"{_fmt(favorites)} ÷ {STRAIN_FAVORITES_DIVISOR}",
            math.floor(favorites / STRAIN_FAVORITES_DIVISOR),
        ),
        _component(
            "Pharmacy Reach", pharmacies, f"{_fmt(pharmacies)} pharmacies × {STRAIN_PHARMACY_POINTS}",
            pharmacies * STRAIN_PHARMACY_POINTS,
        ),
        _component(
            "Product Count", products, f"{_fmt(products)} products × {STRAIN_PRODUCT_POINTS}",
            products * STRAIN_PRODUCT_POINTS,
        ),
    ]

    bonuses: list[BonusPenalty] = []
    if abs(price_change) <= STRAIN_STABLE_PRICE_BAND:
        bonuses.append(BonusPenalty(
            type="Price Stability",
            condition=f"±{_fmt(abs(price_change))}% price change",
            points=STRAIN_STABLE_PRICE_BONUS,
        ))
    if abs(price_change) > STRAIN_VOLATILE_PRICE_BAND:
        bonuses.append(BonusPenalty(
            type="Price Volatility",
            condition=f"{_fmt(abs(price_change))}% price change (>{STRAIN_VOLATILE_PRICE_BAND}%)",
            points=STRAIN_VOLATILITY_PENALTY,
        ))
    if penetration > STRAIN_MARKET_SHARE_THRESHOLD:
        bonuses.append(BonusPenalty(
            type="Market Share",
            condition=f"{_fmt(penetration)}% of market",
            points=STRAIN_MARKET_SHARE_BONUS,
        ))
    return components, bonuses


def score_product(m: NormalizedMetrics) -> FormulaResult:
    orders = m.values["order_count"]
    price_change = m.values["price_change_percent"]

    components = [
        _component(
            "Order Activity", orders,
            f"{_fmt(orders)} orders × {PRODUCT_ORDER_POINTS} (cap {PRODUCT_ORDER_POINTS_CAP})",
            min(orders * PRODUCT_ORDER_POINTS, PRODUCT_ORDER_POINTS_CAP),
        ),
        _component("Demand Tier", m.tier, f"{m.tier} demand", m.tier_points),
    ]

    bonuses: list[BonusPenalty] = []
    if m.trend_multiplier >= PRODUCT_TRENDING_MULTIPLIER:
        bonuses.append(BonusPenalty(
            type="Trending",
            condition=f"{m.trend_multiplier:.2f}x vs 7-day average",
            points=PRODUCT_TRENDING_BONUS,
        ))
    if m.labels.get("price_category") == PRODUCT_PREMIUM_CATEGORY:
        bonuses.append(BonusPenalty(
            type="Premium Tier",
            condition=f"{PRODUCT_PREMIUM_CATEGORY} price category",
            points=PRODUCT_PREMIUM_BONUS,
        ))
    if price_change < PRODUCT_PRICE_CRASH_THRESHOLD:
        bonuses.append(BonusPenalty(
            type="Price Crash",
            condition=f"price dropped {_fmt(abs(price_change))}%",
            points=PRODUCT_PRICE_CRASH_PENALTY,
        ))
    return components, bonuses


def score_pharmacy(m: NormalizedMetrics) -> FormulaResult:
    revenue_euros = m.values["revenue_cents"] / 100
    orders = m.values["order_count"]
    retention = m.values["customer_retention_rate"]
    variety = m.values["product_variety"]

    components = [
        _component(
            "Weekly Revenue", revenue_euros,
            f"€{revenue_euros:.2f} ÷ {PHARMACY_REVENUE_EUROS_PER_POINT}",
            math.floor(revenue_euros / PHARMACY_REVENUE_EUROS_PER_POINT),
        ),
        _component(
            "Order Count", orders,
            f"{_fmt(orders)} orders × {PHARMACY_ORDER_POINTS} (cap {PHARMACY_ORDER_POINTS_CAP})",
            min(orders * PHARMACY_ORDER_POINTS, PHARMACY_ORDER_POINTS_CAP),
        ),
        _component(
            "Customer Retention", retention,
            f"({_fmt(retention)}% - {PHARMACY_RETENTION_BASELINE}%) × 1",
            max(0, retention - PHARMACY_RETENTION_BASELINE),
        ),
        _component(
            "Product Variety", variety, f"{_fmt(variety)} products ÷ {PHARMACY_VARIETY_DIVISOR}",
            math.floor(variety / PHARMACY_VARIETY_DIVISOR),
        ),
        _component("Order Size", m.values["avg_order_size_grams"], f"{m.tier} orders", m.tier_points),
    ]

    bonuses: list[BonusPenalty] = []
    usage = m.values.get("app_usage_rate", 0.0)
    if usage > PHARMACY_HIGH_USAGE_THRESHOLD:
        bonuses.append(BonusPenalty(
            type="High Usage",
            condition=f"{_fmt(usage)}% app usage (>{PHARMACY_HIGH_USAGE_THRESHOLD}%)",
            points=PHARMACY_HIGH_USAGE_BONUS,
        ))
    growth = m.growth_percent or 0.0
    growth_points = math.floor(growth * 2 / 5)
    if growth_points > 0:
        bonuses.append(BonusPenalty(
            type="Growth Bonus",
            condition=f"{_fmt(growth)}% × 2 ÷ 5",
            points=growth_points,
        ))
    if retention < PHARMACY_RETENTION_DROP_THRESHOLD:
        bonuses.append(BonusPenalty(
            type="Retention Drop",
            condition=f"{_fmt(retention)}% retention (<{PHARMACY_RETENTION_DROP_THRESHOLD}%)",
            points=PHARMACY_RETENTION_DROP_PENALTY,
        ))
    return components, bonuses


def brand_momentum_signal(values: dict[str, float]) -> int:
    """Combined week-over-week growth across the brand's engagement counters."""
    signal = (
        math.floor(values.get("favorite_growth", 0.0) / 10)
        + math.floor(values.get("view_growth", 0.0) / 500)
        + math.floor(values.get("comment_growth", 0.0))
        + math.floor(values.get("click_growth", 0.0) / 5)
    )
    return min(max(signal, 0), BRAND_MOMENTUM_CAP)


def score_brand(m: NormalizedMetrics) -> FormulaResult:
    favorites = m.values["favorites"]
    views = m.values["views"]
    comments = m.values["comments"]
    clicks = m.values["affiliate_clicks"]
    momentum = brand_momentum_signal(m.values)

    components = [
        _component(
            "Favorites", favorites, f"{_fmt(favorites)} ÷ {BRAND_FAVORITES_DIVISOR} (cap {BRAND_FAVORITES_CAP})",
            min(math.floor(favorites / BRAND_FAVORITES_DIVISOR), BRAND_FAVORITES_CAP),
        ),
        _component(
            "Views", views, f"{_fmt(views)} ÷ {BRAND_VIEWS_DIVISOR} (cap {BRAND_VIEWS_CAP})",
            min(math.floor(views / BRAND_VIEWS_DIVISOR), BRAND_VIEWS_CAP),
        ),
        _component(
            "Comments", comments, f"{_fmt(comments)} × {BRAND_COMMENT_POINTS} (cap {BRAND_COMMENTS_CAP})",
            min(comments * BRAND_COMMENT_POINTS, BRAND_COMMENTS_CAP),
        ),
        _component(
            "Affiliate Clicks", clicks, f"{_fmt(clicks)} × {BRAND_CLICK_POINTS} (cap {BRAND_CLICKS_CAP})",
            min(clicks * BRAND_CLICK_POINTS, BRAND_CLICKS_CAP),
        ),
        _component("Momentum Signal", momentum, f"growth signal (cap {BRAND_MOMENTUM_CAP})", momentum),
    ]

    bonuses: list[BonusPenalty] = []
    engagement = m.values.get("engagement_rate", 0.0)
    for threshold, points in BRAND_ENGAGEMENT_TIERS:
        if engagement >= threshold:
            bonuses.append(BonusPenalty(
                type="Engagement",
                condition=f"{_fmt(engagement)}% engagement (≥{threshold}%)",
                points=points,
            ))
            break

    sentiment = m.values.get("sentiment_score", 0.0)
    adjustment = _pts(min(max(sentiment / 10, BRAND_SENTIMENT_FLOOR), BRAND_SENTIMENT_CEILING))
    if adjustment > 0:
        bonuses.append(BonusPenalty(
            type="Positive Sentiment", condition=f"sentiment {_fmt(sentiment)}", points=adjustment,
        ))
    elif adjustment < 0:
        bonuses.append(BonusPenalty(
            type="Negative Sentiment", condition=f"sentiment {_fmt(sentiment)}", points=adjustment,
        ))
    return components, bonuses


FORMULAS: dict[EntityType, Callable[[NormalizedMetrics], FormulaResult]] = {
    EntityType.MANUFACTURER: score_manufacturer,
    EntityType.STRAIN: score_strain,
    EntityType.PRODUCT: score_product,
    EntityType.PHARMACY: score_pharmacy,
    EntityType.BRAND: score_brand,
}

_unmapped = set(EntityType) - set(FORMULAS)
if _unmapped:
    raise RuntimeError(f"No formula registered for: {sorted(t.value for t in _unmapped)}")


def apply_formula(m: NormalizedMetrics) -> FormulaResult:
    """Dispatch to the formula for the metrics' entity type."""
    return FORMULAS[m.entity_type](m)


SCORING_RULES: dict[str, dict[str, str]] = {
    EntityType.MANUFACTURER.value: {
        "Supply Tier": "Powerhouse 5 / High 3 / Steady 2 / Emerging 1",
        "Growth Rate": f"growth% ÷ {MFG_GROWTH_DIVISOR}",
        "Rank Improvement": f"{MFG_RANK_POINTS_PER_PLACE} per rank gained (cap {MFG_RANK_POINTS_CAP})",
        "Product Diversity": f"1 per product (cap {MFG_PRODUCT_POINTS_CAP})",
    },
    EntityType.STRAIN.value: {
        "Aggregate Favorites": f"favorites ÷ {STRAIN_FAVORITES_DIVISOR}",
        "Pharmacy Reach": f"{STRAIN_PHARMACY_POINTS} per pharmacy",
        "Product Count": f"{STRAIN_PRODUCT_POINTS} per product",
        "Price Stability": f"+{STRAIN_STABLE_PRICE_BONUS} within ±{STRAIN_STABLE_PRICE_BAND}%",
        "Price Volatility": f"{STRAIN_VOLATILITY_PENALTY} beyond ±{STRAIN_VOLATILE_PRICE_BAND}%",
        "Market Share": f"+{STRAIN_MARKET_SHARE_BONUS} above {STRAIN_MARKET_SHARE_THRESHOLD}% penetration",
    },
    EntityType.PRODUCT.value: {
        "Order Activity": f"{PRODUCT_ORDER_POINTS} per order (cap {PRODUCT_ORDER_POINTS_CAP})",
        "Demand Tier": "Blockbuster 20 / Popular 12 / Steady 6 / Niche 2",
        "Trending": f"+{PRODUCT_TRENDING_BONUS} at {PRODUCT_TRENDING_MULTIPLIER}x the 7-day average",
        "Premium Tier": f"+{PRODUCT_PREMIUM_BONUS} for {PRODUCT_PREMIUM_CATEGORY} products",
        "Price Crash": f"{PRODUCT_PRICE_CRASH_PENALTY} when price drops more than {abs(PRODUCT_PRICE_CRASH_THRESHOLD)}%",
    },
    EntityType.PHARMACY.value: {
        "Weekly Revenue": f"€ ÷ {PHARMACY_REVENUE_EUROS_PER_POINT}",
        "Order Count": f"{PHARMACY_ORDER_POINTS} per order (cap {PHARMACY_ORDER_POINTS_CAP})",
        "Customer Retention": f"1 per % above {PHARMACY_RETENTION_BASELINE}%",
        "Product Variety": f"products ÷ {PHARMACY_VARIETY_DIVISOR}",
        "Order Size": "Bulk 6 / Large 4 / Standard 2",
        "High Usage": f"+{PHARMACY_HIGH_USAGE_BONUS} above {PHARMACY_HIGH_USAGE_THRESHOLD}% app usage",
        "Growth Bonus": "growth% × 2 ÷ 5",
        "Retention Drop": f"{PHARMACY_RETENTION_DROP_PENALTY} below {PHARMACY_RETENTION_DROP_THRESHOLD}% retention",
    },
    EntityType.BRAND.value: {
        "Favorites": f"favorites ÷ {BRAND_FAVORITES_DIVISOR} (cap {BRAND_FAVORITES_CAP})",
        "Views": f"views ÷ {BRAND_VIEWS_DIVISOR} (cap {BRAND_VIEWS_CAP})",
        "Comments": f"{BRAND_COMMENT_POINTS} per comment (cap {BRAND_COMMENTS_CAP})",
        "Affiliate Clicks": f"{BRAND_CLICK_POINTS} per click (cap {BRAND_CLICKS_CAP})",
        "Momentum Signal": f"growth signal (cap {BRAND_MOMENTUM_CAP})",
        "Engagement": "+15 at 10% / +10 at 5%",
        "Sentiment": f"sentiment ÷ 10, from {BRAND_SENTIMENT_FLOOR} to +{BRAND_SENTIMENT_CEILING}",
    },
}
