"""Tests for the per-entity-type formulas."""

import pytest

from league_scoring.core.formulas import FORMULAS, apply_formula, brand_momentum_signal
from league_scoring.core.models import EntityType
from league_scoring.core.normalizer import normalize

from factories import snapshot


def run(entity_type, **kwargs):
    components, bonuses = apply_formula(normalize(snapshot(entity_type, **kwargs)))
    return components, bonuses


def points_by_category(components):
    return {c.category: c.points for c in components}


def test_every_entity_type_has_a_formula():
    assert set(FORMULAS) == set(EntityType)


class TestManufacturer:

    def test_worked_example(self):
        # High tier 3 + growth 15% -> 3 + two ranks climbed -> 16 + 25 products capped at 20
        components, bonuses = run(
            EntityType.MANUFACTURER,
            rank=3, rank_delta=2,
            sales_volume_grams=12_000, growth_rate_percent=15, product_count=25,
        )
        assert points_by_category(components) == {
            "Supply Tier": 3,
            "Growth Rate": 3,
            "Rank Improvement": 16,
            "Product Diversity": 20,
        }
        assert sum(c.points for c in components) == 42
        assert bonuses == []

    def test_rank_improvement_capped(self):
        components, _ = run(EntityType.MANUFACTURER, rank_delta=9)
        assert points_by_category(components)["Rank Improvement"] == 40

    def test_rank_drop_scores_nothing(self):
        components, _ = run(EntityType.MANUFACTURER, rank_delta=-3)
        assert points_by_category(components)["Rank Improvement"] == 0

    def test_new_entity_keeps_component_order(self):
        components, _ = run(EntityType.MANUFACTURER)
        assert [c.category for c in components] == [
            "Supply Tier", "Growth Rate", "Rank Improvement", "Product Diversity",
        ]
        assert components[2].formula == "no prior period"

    def test_negative_growth_costs_points(self):
        components, _ = run(EntityType.MANUFACTURER, growth_rate_percent=-12)
        assert points_by_category(components)["Growth Rate"] == -3


class TestStrain:

    def test_base_components(self):
        components, _ = run(EntityType.STRAIN, total_favorites=1_500, pharmacy_count=5, product_count=4)
        assert points_by_category(components) == {
            "Aggregate Favorites": 10,
            "Pharmacy Reach": 20,
            "Product Count": 8,
        }

    def test_price_stability_bonus(self):
        _, bonuses = run(EntityType.STRAIN, price_change_percent=-5)
        assert [(b.type, b.points) for b in bonuses] == [("Price Stability", 10)]

    def test_volatility_penalty(self):
        _, bonuses = run(EntityType.STRAIN, price_change_percent=25)
        assert [(b.type, b.points) for b in bonuses] == [("Price Volatility", -10)]
        assert bonuses[0].is_penalty

    def test_between_bands_is_neutral(self):
        _, bonuses = run(EntityType.STRAIN, price_change_percent=12)
        assert bonuses == []

    def test_market_share_bonus(self):
        _, bonuses = run(EntityType.STRAIN, market_penetration_percent=51)
        assert ("Market Share", 15) in [(b.type, b.points) for b in bonuses]


class TestProduct:

    def test_order_points_clamped(self):
        capped, _ = run(EntityType.PRODUCT, order_count=25)
        huge, _ = run(EntityType.PRODUCT, order_count=10_000)
        assert points_by_category(capped)["Order Activity"] == 100
        assert points_by_category(huge)["Order Activity"] == 100

    def test_same_total_past_the_cap(self):
        at_cap, _ = run(EntityType.PRODUCT, order_count=100)
        huge, _ = run(EntityType.PRODUCT, order_count=10_000)
        assert points_by_category(at_cap) == points_by_category(huge)
        assert sum(c.points for c in huge) == 120

    def test_demand_tier_component(self):
        components, _ = run(EntityType.PRODUCT, order_count=7)
        assert points_by_category(components) == {"Order Activity": 28, "Demand Tier": 2}

    def test_trending_bonus(self):
        _, bonuses = run(EntityType.PRODUCT, days1_volume=30, days7_volume=70)
        assert [b.type for b in bonuses] == ["Trending"]

    def test_premium_and_crash(self):
        _, bonuses = run(EntityType.PRODUCT, price_category="expensive", price_change_percent=-25)
        assert [(b.type, b.points) for b in bonuses] == [("Premium Tier", 8), ("Price Crash", -15)]

    def test_crash_threshold_is_strict(self):
        _, bonuses = run(EntityType.PRODUCT, price_change_percent=-20)
        assert bonuses == []


class TestPharmacy:

    def test_fixture(self):
        # €4000 -> 5, 200 orders x 1.5 capped at 60, retention 60% -> 0, 40 products -> 2, 12g -> Large 4
        components, bonuses = run(
            EntityType.PHARMACY,
            revenue_cents=400_000, order_count=200, customer_retention_rate=60,
            product_variety=40, avg_order_size_grams=12,
        )
        assert points_by_category(components) == {
            "Weekly Revenue": 5,
            "Order Count": 60,
            "Customer Retention": 0,
            "Product Variety": 2,
            "Order Size": 4,
        }
        assert bonuses == []

    def test_order_points_below_cap(self):
        components, _ = run(EntityType.PHARMACY, order_count=15)
        assert points_by_category(components)["Order Count"] == 22.5

    def test_retention_above_baseline(self):
        components, _ = run(EntityType.PHARMACY, customer_retention_rate=88)
        assert points_by_category(components)["Customer Retention"] == 13

    def test_bonuses_and_retention_drop(self):
        _, bonuses = run(
            EntityType.PHARMACY, app_usage_rate=70, growth_rate_percent=25, customer_retention_rate=45,
        )
        assert [(b.type, b.points) for b in bonuses] == [
            ("High Usage", 5),
            ("Growth Bonus", 10),
            ("Retention Drop", -15),
        ]

    def test_negative_growth_gives_no_bonus(self):
        _, bonuses = run(EntityType.PHARMACY, growth_rate_percent=-30)
        assert bonuses == []


class TestBrand:

    def test_caps(self):
        components, _ = run(
            EntityType.BRAND, favorites=100_000, views=1_000_000, comments=50, affiliate_clicks=500,
        )
        assert points_by_category(components) == {
            "Favorites": 30,
            "Views": 20,
            "Comments": 15,
            "Affiliate Clicks": 15,
            "Momentum Signal": 0,
        }

    def test_momentum_signal(self):
        assert brand_momentum_signal({"favorite_growth": 25, "view_growth": 1_200, "comment_growth": 3, "click_growth": 11}) == 9
        assert brand_momentum_signal({"favorite_growth": 1_000}) == 20
        assert brand_momentum_signal({"view_growth": -5_000}) == 0

    @pytest.mark.parametrize("rate,points", [(12, 15), (10, 15), (7, 10), (4.9, None)])
    def test_engagement_tiers(self, rate, points):
        _, bonuses = run(EntityType.BRAND, engagement_rate=rate)
        found = [b.points for b in bonuses if b.type == "Engagement"]
        assert found == ([] if points is None else [points])

    def test_sentiment_is_linear_then_clamped(self):
        _, positive = run(EntityType.BRAND, sentiment_score=80)
        _, capped = run(EntityType.BRAND, sentiment_score=400)
        _, negative = run(EntityType.BRAND, sentiment_score=-300)
        assert [(b.type, b.points) for b in positive] == [("Positive Sentiment", 8)]
        assert [b.points for b in capped] == [15]
        assert [(b.type, b.points) for b in negative] == [("Negative Sentiment", -10)]
