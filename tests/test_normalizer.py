"""Tests for metric validation, tiers, growth clamping and the trend multiplier."""

import math

import pytest

from league_scoring.core.errors import InvalidSnapshotError
from league_scoring.core.models import EntityType, StatSnapshot
from league_scoring.core.normalizer import (
    DEMAND_TIERS,
    SUPPLY_TIERS,
    bucket,
    normalize,
    trend_multiplier,
)

from factories import WEEK, snapshot


class TestValidation:

    def test_missing_required_metric(self):
        snap = StatSnapshot(
            entity_id=9, entity_type=EntityType.PRODUCT, period=WEEK, metrics={"order_count": 4},
        )
        with pytest.raises(InvalidSnapshotError) as excinfo:
            normalize(snap)
        assert excinfo.value.subject == "product:9"
        assert "price_change_percent" in excinfo.value.reason

    def test_null_required_metric(self):
        with pytest.raises(InvalidSnapshotError):
            normalize(snapshot(EntityType.BRAND, views=None))

    def test_negative_counter(self):
        with pytest.raises(InvalidSnapshotError, match="negative"):
            normalize(snapshot(EntityType.PHARMACY, order_count=-3))

    def test_non_finite_value(self):
        with pytest.raises(InvalidSnapshotError, match="finite"):
            normalize(snapshot(EntityType.MANUFACTURER, sales_volume_grams=math.inf))

    def test_required_metric_as_text(self):
        with pytest.raises(InvalidSnapshotError) as excinfo:
            normalize(snapshot(EntityType.PRODUCT, 302, order_count="30"))
        assert excinfo.value.subject == "product:302"
        assert excinfo.value.reason == "order_count is not numeric"

    def test_optional_metric_as_text(self):
        with pytest.raises(InvalidSnapshotError, match="days1_volume is not numeric"):
            normalize(snapshot(EntityType.PRODUCT, days1_volume="12"))

    def test_signed_metrics_may_be_negative(self):
        normalized = normalize(snapshot(EntityType.STRAIN, price_change_percent=-12))
        assert normalized.values["price_change_percent"] == -12


class TestDerivedInputs:

    def test_growth_clamped_at_minus_100(self):
        normalized = normalize(snapshot(EntityType.MANUFACTURER, growth_rate_percent=-250))
        assert normalized.growth_percent == -100
        assert normalized.values["growth_rate_percent"] == -100

    def test_growth_not_capped_upwards(self):
        normalized = normalize(snapshot(EntityType.MANUFACTURER, growth_rate_percent=900))
        assert normalized.growth_percent == 900

    @pytest.mark.parametrize("grams,label,points", [
        (50_000, "Powerhouse", 5),
        (49_999, "High", 3),
        (10_000, "High", 3),
        (2_000, "Steady", 2),
        (0, "Emerging", 1),
    ])
    def test_supply_tiers(self, grams, label, points):
        normalized = normalize(snapshot(EntityType.MANUFACTURER, sales_volume_grams=grams))
        assert (normalized.tier, normalized.tier_points) == (label, points)

    def test_demand_tier_buckets(self):
        assert bucket(150, DEMAND_TIERS) == ("Blockbuster", 20)
        assert bucket(4, DEMAND_TIERS) == ("Dormant", 0)
        assert bucket(2_000, SUPPLY_TIERS) == ("Steady", 2)

    def test_order_size_tier_for_pharmacy(self):
        normalized = normalize(snapshot(EntityType.PHARMACY, avg_order_size_grams=25))
        assert (normalized.tier, normalized.tier_points) == ("Bulk", 6)

    def test_strain_has_no_tier(self):
        normalized = normalize(snapshot(EntityType.STRAIN))
        assert normalized.tier is None
        assert normalized.tier_points == 0

    def test_string_metrics_become_labels(self):
        normalized = normalize(snapshot(EntityType.PRODUCT, price_category="expensive"))
        assert normalized.labels == {"price_category": "expensive"}
        assert "price_category" not in normalized.values

    def test_rank_context_carried_through(self):
        normalized = normalize(snapshot(EntityType.BRAND, rank=4, rank_delta=-2, streak=3))
        assert (normalized.rank, normalized.rank_delta, normalized.streak) == (4, -2, 3)
        assert normalized.has_prior_period

    def test_new_entity_has_no_prior_period(self):
        assert not normalize(snapshot(EntityType.BRAND)).has_prior_period

    def test_log_volume(self):
        normalized = normalize(snapshot(EntityType.BRAND, views=999))
        assert normalized.log_volume == 3.0


class TestTrendMultiplier:

    def test_flat_volume_is_one(self):
        assert trend_multiplier(10, 70) == 1.0

    def test_spike(self):
        assert trend_multiplier(30, 70) == 3.0

    def test_clamped(self):
        assert trend_multiplier(1_000, 70) == 5.0
        assert trend_multiplier(0, 700) == 0.1

    def test_no_volume(self):
        assert trend_multiplier(0, 0) == 1.0

    def test_brand_new_entity(self):
        assert trend_multiplier(5, 0) == 5.0

    def test_only_products_get_a_trend(self):
        product = normalize(snapshot(EntityType.PRODUCT, days1_volume=20, days7_volume=70))
        assert product.trend_multiplier == 2.0
        assert normalize(snapshot(EntityType.PRODUCT)).trend_multiplier == 1.0
