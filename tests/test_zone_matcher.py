"""
Tests for zone resolution and zone administration.
"""
import pytest

from shipping_engine.core.exceptions import MethodAlreadyAttachedError, ShippingValidationError
from shipping_engine.models import ShippingAddress, ShippingZone
from shipping_engine.services.zone_matcher import (
    ZoneAdmin,
    ZoneMatcher,
    match_zone,
    postcode_matches,
    zone_matches,
)
from tests.fakes import add_method, add_zone, attach, uk_address


class TestPostcodeMatching:
    """Test postcode pattern matching."""

    def test_prefix_match(self):
        assert postcode_matches("BT1 1AA", "BT")
        assert not postcode_matches("SW1A 1AA", "BT")

    def test_glob_match(self):
        assert postcode_matches("SW1A 1AA", "SW1*")
        assert postcode_matches("BT11AA", "BT?*")
        assert not postcode_matches("SE1 7PB", "SW*")

    def test_spaces_and_case_ignored(self):
        assert postcode_matches("sw1a 1aa", "SW1A1AA")

    def test_empty_pattern_never_matches(self):
        assert not postcode_matches("SW1A 1AA", "  ")


class TestZoneMatches:
    """Test matching a single zone against an address."""

    def test_country_match(self):
        zone = ShippingZone(id=1, name="UK", countries=["GB"], is_active=True)
        assert zone_matches(zone, uk_address())
        assert not zone_matches(zone, ShippingAddress(country="FR", postcode="75001"))

    def test_wildcard_country(self):
        zone = ShippingZone(id=1, name="World", countries=["*"], is_active=True)
        assert zone_matches(zone, ShippingAddress(country="JP"))

    def test_region_required(self):
        zone = ShippingZone(id=1, name="California", countries=["US"], regions=["CA"], is_active=True)
        assert zone_matches(zone, ShippingAddress(country="US", region="ca"))
        assert not zone_matches(zone, ShippingAddress(country="US", region="NY"))
        assert not zone_matches(zone, ShippingAddress(country="US"))

    def test_excluded_postcodes(self):
        zone = ShippingZone(
            id=1, name="Mainland", countries=["GB"], excluded_postcodes=["BT*", "HS"], is_active=True
        )
        assert zone_matches(zone, uk_address("SW1A 1AA"))
        assert not zone_matches(zone, uk_address("BT1 1AA"))
        assert not zone_matches(zone, uk_address("HS1 2AA"))

    def test_postcode_whitelist_requires_postcode(self):
        zone = ShippingZone(id=1, name="NI", countries=["GB"], postcodes=["BT"], is_active=True)
        assert zone_matches(zone, uk_address("BT7 1NN"))
        assert not zone_matches(zone, ShippingAddress(country="GB"))


class TestMatchZone:
    """Test first-match resolution across zones."""

    def test_first_active_match_wins(self):
        override = ShippingZone(id=2, name="Highlands", countries=["GB"], postcodes=["IV"], is_active=True)
        uk = ShippingZone(id=1, name="UK", countries=["GB"], is_active=True)
        assert match_zone([override, uk], uk_address("IV1 1AA")) is override
        assert match_zone([override, uk], uk_address("SW1A 1AA")) is uk

    def test_inactive_zone_skipped(self):
        uk = ShippingZone(id=1, name="UK", countries=["GB"], is_active=False)
        assert match_zone([uk], uk_address()) is None

    def test_no_zone_returns_none(self):
        uk = ShippingZone(id=1, name="UK", countries=["GB"], is_active=True)
        assert match_zone([uk], ShippingAddress(country="DE")) is None


class TestZoneMatcher:
    """Test database-backed zone resolution."""

    @pytest.mark.asyncio
    async def test_resolve_by_display_order(self, db):
        await add_zone(db, "Rest of World", ["*"], display_order=5)
        uk = await add_zone(db, "UK", ["GB"], display_order=1)
        matcher = ZoneMatcher(db)

        assert (await matcher.resolve_zone(uk_address())).id == uk.id
        assert (await matcher.resolve_zone(ShippingAddress(country="FR"))).name == "Rest of World"

    @pytest.mark.asyncio
    async def test_country_in_single_zone_is_deterministic(self, db):
        await add_zone(db, "EU", ["FR", "DE"], display_order=0)
        uk = await add_zone(db, "UK", ["GB"], display_order=1)
        matcher = ZoneMatcher(db)

        for _ in range(3):
            assert (await matcher.resolve_zone(uk_address())).id == uk.id
        assert await matcher.resolve_zone(ShippingAddress(country="US")) is None

    @pytest.mark.asyncio
    async def test_zone_cached_on_address(self, db):
        uk = await add_zone(db, "UK", ["GB"])
        matcher = ZoneMatcher(db)
        address = uk_address()

        await matcher.resolve_zone(address)
        assert address.cached_zone() is uk

        address.postcode = "BT1 1AA"
        assert address.cached_zone() is None

    @pytest.mark.asyncio
    async def test_list_methods_for_zone_ordering(self, db):
        zone = await add_zone(db, "UK", ["GB"])
        express = await add_method(db, "Express", display_order=0)
        standard = await add_method(db, "Standard", display_order=1)
        retired = await add_method(db, "Retired", is_active=False)
        await attach(db, zone, express, sort_order=2)
        await attach(db, zone, standard, sort_order=1)
        await attach(db, zone, retired, sort_order=0)

        methods = await ZoneMatcher(db).list_methods_for_zone(zone)
        assert [m.name for m in methods] == ["Standard", "Express"]


class TestZoneAdmin:
    """Test zone administration."""

    @pytest.mark.asyncio
    async def test_create_zone_normalizes_and_orders(self, db):
        admin = ZoneAdmin(db)
        first = await admin.create_zone("UK", ["gb"])
        second = await admin.create_zone("EU", ["fr", "de", "FR"])

        assert first.countries == ["GB"]
        assert second.countries == ["FR", "DE"]
        assert second.display_order == first.display_order + 1

    @pytest.mark.asyncio
    async def test_create_zone_rejects_bad_country(self, db):
        with pytest.raises(ShippingValidationError):
            await ZoneAdmin(db).create_zone("Bad", ["GBR"])

    @pytest.mark.asyncio
    async def test_reorder_zones(self, db):
        admin = ZoneAdmin(db)
        a = await admin.create_zone("A", ["GB"])
        b = await admin.create_zone("B", ["GB"])

        await admin.reorder_zones([b.id, a.id])
        zone = await ZoneMatcher(db).resolve_zone(uk_address())
        assert zone.id == b.id

    @pytest.mark.asyncio
    async def test_deactivate_zone(self, db):
        admin = ZoneAdmin(db)
        zone = await admin.create_zone("UK", ["GB"])
        await admin.deactivate_zone(zone)

        assert await ZoneMatcher(db).resolve_zone(uk_address()) is None

    @pytest.mark.asyncio
    async def test_attach_method_twice_conflicts(self, db):
        admin = ZoneAdmin(db)
        zone = await admin.create_zone("UK", ["GB"])
        method = await add_method(db, "Standard")

        await admin.attach_method(zone, method)
        with pytest.raises(MethodAlreadyAttachedError) as exc_info:
            await admin.attach_method(zone, method)
        assert exc_info.value.code == "METHOD_ALREADY_ATTACHED"

    @pytest.mark.asyncio
    async def test_detach_unattached_method(self, db):
        admin = ZoneAdmin(db)
        zone = await admin.create_zone("UK", ["GB"])
        method = await add_method(db, "Standard")

        with pytest.raises(ShippingValidationError):
            await admin.detach_method(zone, method)

        await admin.attach_method(zone, method)
        await admin.detach_method(zone, method)
        assert await ZoneMatcher(db).list_methods_for_zone(zone) == []
