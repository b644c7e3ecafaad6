"""
Tests for rate banding, cost calculation and rate administration.
"""
from datetime import datetime, timedelta, timezone

import pytest

from shipping_engine.core.exceptions import (
    NoShippingRateError,
    RateConflictError,
    ShippingValidationError,
)
from shipping_engine.models import RateType, ShippingRate
from shipping_engine.services.rate_table import RateTable, calculate_cost, kg_to_grams, select_rate
from tests.fakes import add_method, add_rate, add_zone

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _rate(id, min_w=0, max_w=None, min_t=0, max_t=None, **kwargs):
    return ShippingRate(
        id=id,
        method_id=1,
        zone_id=1,
        rate_type=kwargs.pop("rate_type", RateType.FLAT),
        rate=kwargs.pop("rate", 500),
        min_weight_grams=min_w,
        max_weight_grams=max_w,
        min_total=min_t,
        max_total=max_t,
        is_active=kwargs.pop("is_active", True),
        **kwargs,
    )


class TestUnits:
    """Test unit conversion at the rate lookup boundary."""

    def test_kg_to_grams(self):
        assert kg_to_grams(2) == 2000
        assert kg_to_grams(0.0005) == 1
        assert kg_to_grams(None) == 0


class TestSelectRate:
    """Test band selection."""

    def test_lower_bound_inclusive_upper_exclusive(self):
        light = _rate(1, 0, 1000, rate=300)
        heavy = _rate(2, 1000, 5000, rate=700)

        assert select_rate([light, heavy], 999, 100, at=NOW) is light
        assert select_rate([light, heavy], 1000, 100, at=NOW) is heavy
        assert select_rate([light, heavy], 5000, 100, at=NOW) is None

    def test_unbounded_max(self):
        rate = _rate(1, 1000, None)
        assert select_rate([rate], 250000, 100, at=NOW) is rate

    def test_total_band(self):
        low = _rate(1, min_t=0, max_t=5000)
        high = _rate(2, min_t=5000, max_t=None)
        assert select_rate([low, high], 10, 4999, at=NOW) is low
        assert select_rate([low, high], 10, 5000, at=NOW) is high

    def test_overlap_picks_lowest_id(self, caplog):
        a = _rate(7, 0, 5000)
        b = _rate(3, 0, 2000)
        assert select_rate([a, b], 1500, 100, at=NOW) is b
        assert "Overlapping shipping rates" in caplog.text

    def test_inactive_and_out_of_window_ignored(self):
        inactive = _rate(1, is_active=False)
        future = _rate(2, starts_at=NOW + timedelta(days=1))
        expired = _rate(3, ends_at=NOW)
        assert select_rate([inactive, future, expired], 10, 10, at=NOW) is None

        current = _rate(4, starts_at=NOW - timedelta(days=1), ends_at=NOW + timedelta(days=1))
        assert select_rate([current], 10, 10, at=NOW) is current


class TestCalculateCost:
    """Test cost calculation."""

    def test_free_threshold_reached_exactly(self):
        rate = _rate(1, rate=500, free_threshold=5000)
        assert calculate_cost(rate, 5000) == 0
        assert calculate_cost(rate, 4999) == 500

    def test_flat_without_threshold(self):
        assert calculate_cost(_rate(1, rate=650), 100000) == 650

    def test_percentage_rounds_half_up(self):
        rate = _rate(1, rate_type=RateType.PERCENTAGE, percent=0.05)
        assert calculate_cost(rate, 1010) == 51  # 50.5
        assert calculate_cost(rate, 1000) == 50


class TestRateTable:
    """Test database-backed lookups and administration."""

    @pytest.fixture
    async def catalog(self, db):
        zone = await add_zone(db, "UK", ["GB"])
        method = await add_method(db, "Standard")
        return zone, method

    @pytest.mark.asyncio
    async def test_find_rate(self, db, catalog, clock):
        zone, method = catalog
        await add_rate(db, method, zone, rate=300, max_weight_grams=1000)
        heavy = await add_rate(db, method, zone, rate=700, min_weight_grams=1000, max_weight_grams=5000)

        table = RateTable(db, clock=clock)
        assert (await table.find_rate(method, zone, 1000, 2000)).id == heavy.id
        assert await table.find_rate(method, zone, 6000, 2000) is None

    @pytest.mark.asyncio
    async def test_calculate_for_zone_no_rate(self, db, catalog, clock):
        zone, method = catalog
        table = RateTable(db, clock=clock)
        with pytest.raises(NoShippingRateError) as exc_info:
            await table.calculate_for_zone(method.id, zone.id, 1.0, 1000)
        assert exc_info.value.message == "No shipping rate found for the specified criteria."

    @pytest.mark.asyncio
    async def test_calculate_for_zone(self, db, catalog, clock):
        zone, method = catalog
        await add_rate(db, method, zone, rate=500, free_threshold=10000)
        result = await RateTable(db, clock=clock).calculate_for_zone(method.id, zone.id, 2.0, 12000)

        assert result["shipping_cost"] == 0
        assert result["is_free"] is True
        assert result["free_threshold_met"] is True

    @pytest.mark.asyncio
    async def test_create_rate_rejects_overlap(self, db, catalog):
        zone, method = catalog
        table = RateTable(db)
        await table.create_rate(method_id=method.id, zone_id=zone.id, rate=300, min_weight_grams=0, max_weight_grams=1000)

        with pytest.raises(RateConflictError) as exc_info:
            await table.create_rate(method_id=method.id, zone_id=zone.id, rate=400, min_weight_grams=500, max_weight_grams=2000)
        assert len(exc_info.value.conflicts) == 1

        # Adjacent band is fine
        await table.create_rate(method_id=method.id, zone_id=zone.id, rate=400, min_weight_grams=1000, max_weight_grams=2000)

    @pytest.mark.asyncio
    async def test_overlap_allowed_in_disjoint_windows(self, db, catalog):
        zone, method = catalog
        table = RateTable(db)
        switch = datetime(2026, 6, 1, tzinfo=timezone.utc)
        await table.create_rate(method_id=method.id, zone_id=zone.id, rate=300, ends_at=switch)
        await table.create_rate(method_id=method.id, zone_id=zone.id, rate=350, starts_at=switch)

    @pytest.mark.asyncio
    async def test_create_rate_rejects_inverted_band(self, db, catalog):
        zone, method = catalog
        with pytest.raises(ShippingValidationError):
            await RateTable(db).create_rate(
                method_id=method.id, zone_id=zone.id, min_weight_grams=1000, max_weight_grams=1000
            )

    @pytest.mark.asyncio
    async def test_bulk_create_is_all_or_nothing(self, db, catalog):
        zone, method = catalog
        table = RateTable(db)
        await table.create_rate(method_id=method.id, zone_id=zone.id, min_weight_grams=0, max_weight_grams=1000)

        batch = [
            {"method_id": method.id, "zone_id": zone.id, "min_weight_grams": 1000, "max_weight_grams": 3000},
            {"method_id": method.id, "zone_id": zone.id, "min_weight_grams": 2000, "max_weight_grams": 4000},
            {"method_id": method.id, "zone_id": zone.id, "min_weight_grams": 500, "max_weight_grams": 900},
        ]
        with pytest.raises(RateConflictError) as exc_info:
            await table.bulk_create_rates(batch)

        conflicts = exc_info.value.conflicts
        assert {c["index"] for c in conflicts} == {1, 2}
        assert any(c.get("batch_index") == 0 for c in conflicts)
        assert len(await table.get_rates_for(method.id, zone.id)) == 1

    @pytest.mark.asyncio
    async def test_update_rate_excludes_itself(self, db, catalog):
        zone, method = catalog
        table = RateTable(db)
        rate = await table.create_rate(method_id=method.id, zone_id=zone.id, max_weight_grams=1000)

        updated = await table.update_rate(rate, max_weight_grams=2000, rate=450)
        assert updated.max_weight_grams == 2000
        assert updated.rate == 450

    @pytest.mark.asyncio
    async def test_bulk_update_rates(self, db, catalog):
        zone, method = catalog
        table = RateTable(db)
        a = await table.create_rate(method_id=method.id, zone_id=zone.id, max_weight_grams=1000, free_threshold=5000)
        b = await table.create_rate(method_id=method.id, zone_id=zone.id, min_weight_grams=1000)

        count = await table.bulk_update_rates([a.id, b.id], rate=999)
        assert count == 2
        assert a.rate == b.rate == 999
        assert a.free_threshold == 5000

        await table.bulk_update_rates([a.id], free_threshold=None)
        assert a.free_threshold is None

        with pytest.raises(ShippingValidationError):
            await table.bulk_update_rates([a.id])

    @pytest.mark.asyncio
    async def test_duplicate_rate_to_zones(self, db, catalog):
        zone, method = catalog
        eu = await add_zone(db, "EU", ["FR"])
        us = await add_zone(db, "US", ["US"])
        table = RateTable(db)
        source = await table.create_rate(method_id=method.id, zone_id=zone.id, rate=800)
        await table.create_rate(method_id=method.id, zone_id=us.id, rate=900)

        copies = await table.duplicate_rate_to_zones(source, [zone.id, eu.id, us.id])
        assert [c.zone_id for c in copies] == [eu.id]
        assert copies[0].rate == 800

    @pytest.mark.asyncio
    async def test_deactivated_rate_not_found(self, db, catalog, clock):
        zone, method = catalog
        table = RateTable(db, clock=clock)
        rate = await table.create_rate(method_id=method.id, zone_id=zone.id)
        await table.deactivate_rate(rate)

        assert await table.find_rate(method, zone, 10, 10) is None
