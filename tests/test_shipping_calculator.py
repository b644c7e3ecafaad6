"""
Tests for the shipping calculator.
"""
from datetime import date

import pytest

from shipping_engine.models import ShippingAddress
from shipping_engine.models.shipping_class import ShippingClass
from shipping_engine.services.shipping_calculator import (
    QuoteSort,
    ShippingCalculator,
    summarize_lines,
)
from tests.fakes import (
    FakeCart,
    FakeLine,
    FakeOrder,
    FakeProduct,
    add_method,
    add_rate,
    add_zone,
    attach,
    uk_address,
)


@pytest.fixture
async def uk_catalog(db):
    """
    UK zone with three methods:
    Standard (500, free from 10000), Express (1200), Overnight Express (2500).
    """
    zone = await add_zone(db, "UK", ["GB"])
    standard = await add_method(db, "Standard", days=(3, 5), carrier="royal_mail", service_code="tracked_48")
    express = await add_method(db, "Express", days=(1, 2), carrier="royal_mail", service_code="tracked_24")
    overnight = await add_method(db, "Overnight Express", days=(1, 1), carrier="dpd", service_code="next_day")
    for position, method in enumerate((standard, express, overnight)):
        await attach(db, zone, method, sort_order=position)

    await add_rate(db, standard, zone, rate=500, max_weight_grams=5000, max_total=999999, free_threshold=10000)
    await add_rate(db, express, zone, rate=1200, max_weight_grams=5000)
    await add_rate(db, overnight, zone, rate=2500, max_weight_grams=5000)
    return {"zone": zone, "standard": standard, "express": express, "overnight": overnight}


@pytest.fixture
def calculator(db, settings, clock):
    return ShippingCalculator(db, settings=settings, clock=clock)


class TestSummarizeLines:
    """Test aggregation of basket lines."""

    def test_sums_weight_value_and_classes(self):
        book = FakeProduct(id=1, price=1500, weight=0.4, shipping_class="fragile")
        battery = FakeProduct(id=2, price=800, weight=0.1, shipping_class="dangerous")
        facts = summarize_lines([(book, 2, 1500), (battery, 1, 800)])

        assert facts.requires_shipping is True
        assert facts.weight_kg == pytest.approx(0.9)
        assert facts.weight_grams == 900
        assert facts.total == 3800
        assert facts.shipping_classes == {ShippingClass.FRAGILE, ShippingClass.DANGEROUS}

    def test_virtual_lines_ignored(self):
        ebook = FakeProduct(id=1, price=999, shippable=False)
        facts = summarize_lines([(ebook, 3, 999)])

        assert facts.requires_shipping is False
        assert facts.total == 0
        assert facts.shipping_classes == set()

    def test_unknown_class_counts_as_standard(self):
        item = FakeProduct(id=1, shipping_class="glitter")
        assert summarize_lines([(item, 1, 100)]).shipping_classes == {ShippingClass.STANDARD}


class TestCalculateForCart:
    """Test cart quoting."""

    @pytest.mark.asyncio
    async def test_free_shipping_over_threshold(self, calculator, uk_catalog):
        """2kg item worth 120.00 on Standard is free."""
        cart = FakeCart([FakeLine(FakeProduct(id=1, price=12000, weight=2.0))])
        quotes = await calculator.calculate_for_cart(cart, uk_address())

        standard = next(q for q in quotes if q.name == "Standard")
        assert standard.cost == 0
        assert standard.is_free is True
        assert [q.name for q in quotes] == ["Standard", "Express", "Overnight Express"]

    @pytest.mark.asyncio
    async def test_dangerous_goods_exclude_expedited_methods(self, db, calculator):
        """Dangerous items never get Overnight Express."""
        zone = await add_zone(db, "UK", ["GB"])
        ground = await add_method(db, "Standard Ground")
        overnight = await add_method(db, "Overnight Express", days=(1, 1))
        await attach(db, zone, ground, sort_order=0)
        await attach(db, zone, overnight, sort_order=1)
        await add_rate(db, ground, zone, rate=500, max_weight_grams=5000, free_threshold=10000)
        await add_rate(db, overnight, zone, rate=2500, max_weight_grams=5000)

        cart = FakeCart([FakeLine(FakeProduct(id=1, price=12000, weight=2.0, shipping_class="dangerous"))])
        quotes = await calculator.calculate_for_cart(cart, uk_address())

        assert [q.name for q in quotes] == ["Standard Ground"]

    @pytest.mark.asyncio
    async def test_refrigerated_excludes_standard(self, calculator, uk_catalog):
        cart = FakeCart([FakeLine(FakeProduct(id=1, price=3000, weight=1.0, shipping_class="refrigerated"))])
        quotes = await calculator.calculate_for_cart(cart, uk_address())

        assert "Standard" not in [q.name for q in quotes]
        assert {q.name for q in quotes} == {"Express", "Overnight Express"}

    @pytest.mark.asyncio
    async def test_all_virtual_cart_is_empty(self, calculator, uk_catalog):
        cart = FakeCart([FakeLine(FakeProduct(id=1, price=5000, shippable=False), quantity=2)])
        assert await calculator.calculate_for_cart(cart, uk_address()) == []

    @pytest.mark.asyncio
    async def test_no_zone_is_empty(self, calculator, uk_catalog):
        cart = FakeCart([FakeLine(FakeProduct(id=1))])
        assert await calculator.calculate_for_cart(cart, ShippingAddress(country="AU", postcode="2000")) == []

    @pytest.mark.asyncio
    async def test_methods_without_rate_dropped(self, calculator, uk_catalog):
        cart = FakeCart([FakeLine(FakeProduct(id=1, weight=6.0))])
        assert await calculator.calculate_for_cart(cart, uk_address()) == []

    @pytest.mark.asyncio
    async def test_line_unit_price_used(self, calculator, uk_catalog):
        # Product now costs 50.00 but the line was priced at 120.00
        cart = FakeCart([FakeLine(FakeProduct(id=1, price=5000, weight=1.0), unit_price=12000)])
        quotes = await calculator.calculate_for_cart(cart, uk_address())
        assert quotes[0].cost == 0

    @pytest.mark.asyncio
    async def test_delivery_window(self, calculator, uk_catalog):
        cart = FakeCart([FakeLine(FakeProduct(id=1))])
        quotes = await calculator.calculate_for_cart(cart, uk_address())
        standard = quotes[0]

        assert standard.estimated_date_min == date(2026, 3, 5)
        assert standard.estimated_date_max == date(2026, 3, 7)
        assert standard.estimated_delivery == "3-5 days"

    @pytest.mark.asyncio
    async def test_sort_orders(self, calculator, uk_catalog):
        cart = FakeCart([FakeLine(FakeProduct(id=1, price=1000))])
        address = uk_address()

        cheapest = await calculator.calculate_for_cart(cart, address, sort=QuoteSort.CHEAPEST)
        fastest = await calculator.calculate_for_cart(cart, address, sort=QuoteSort.FASTEST)

        assert [q.cost for q in cheapest] == [500, 1200, 2500]
        assert fastest[0].name == "Overnight Express"


class TestOtherEntryPoints:
    """Test order, product and estimate entry points."""

    @pytest.mark.asyncio
    async def test_calculate_for_order_uses_order_address(self, calculator, uk_catalog):
        order = FakeOrder(
            id=1,
            items=[FakeLine(FakeProduct(id=1, price=2000), quantity=2, unit_price=2000)],
            shipping_address=uk_address(),
        )
        quotes = await calculator.calculate_for_order(order)
        assert quotes[0].cost == 500

    @pytest.mark.asyncio
    async def test_calculate_for_order_without_address(self, calculator, uk_catalog):
        order = FakeOrder(id=1, items=[FakeLine(FakeProduct(id=1))])
        assert await calculator.calculate_for_order(order) == []

    @pytest.mark.asyncio
    async def test_calculate_for_products_quantities(self, calculator, uk_catalog):
        comic = FakeProduct(id=10, price=2500, weight=0.2)
        figure = FakeProduct(id=11, price=4000, weight=1.0)

        positional = await calculator.calculate_for_products([comic, figure], uk_address(), quantities=[2, 1])
        keyed = await calculator.calculate_for_products([comic, figure], uk_address(), quantities={11: 2})

        assert positional[0].cost == 500  # 2 x 2500 + 4000 = 9000
        assert keyed[0].cost == 0  # 2500 + 2 x 4000 = 10500
        assert len(keyed) == 3

    @pytest.mark.asyncio
    async def test_quick_estimate(self, calculator, uk_catalog):
        quotes = await calculator.get_quick_estimate("gb", "SW1A 1AA", 1.0, 15000)
        assert quotes[0].name == "Standard"
        assert quotes[0].is_free

    @pytest.mark.asyncio
    async def test_quick_estimate_skips_region_zones_without_region(self, db, calculator, uk_catalog):
        scotland = await add_zone(db, "Scotland", ["GB"], regions=["SCT"], display_order=-1)
        premium = await add_method(db, "Highland Courier")
        await attach(db, scotland, premium)
        await add_rate(db, premium, scotland, rate=1500)

        without_region = await calculator.get_quick_estimate("GB", "IV1 1AA", 1.0, 1000)
        with_region = await calculator.get_quick_estimate("GB", "IV1 1AA", 1.0, 1000, region="SCT")

        assert without_region[0].zone_id == uk_catalog["zone"].id
        assert [q.name for q in with_region] == ["Highland Courier"]

    @pytest.mark.asyncio
    async def test_cheapest_and_fastest(self, calculator, uk_catalog):
        address = uk_address()
        cheapest = await calculator.get_cheapest_method(address, 1.0, 1000)
        fastest = await calculator.get_fastest_method(address, 1.0, 1000)

        assert cheapest.name == "Standard"
        assert fastest.name == "Overnight Express"

    @pytest.mark.asyncio
    async def test_cheapest_with_no_quotes(self, calculator, uk_catalog):
        assert await calculator.get_cheapest_method(ShippingAddress(country="AU"), 1.0, 1000) is None


class TestMethodChecks:
    """Test single-method validation and costing."""

    @pytest.mark.asyncio
    async def test_validate_shipping_method(self, calculator, uk_catalog):
        address = uk_address()
        overnight = uk_catalog["overnight"]

        assert await calculator.validate_shipping_method(overnight.id, address, 1.0, 1000)
        assert not await calculator.validate_shipping_method(overnight.id, address, 9.0, 1000)
        assert not await calculator.validate_shipping_method(
            overnight.id, address, 1.0, 1000, shipping_classes={ShippingClass.DANGEROUS}
        )
        assert not await calculator.validate_shipping_method(overnight.id, ShippingAddress(country="AU"), 1.0, 1000)

    @pytest.mark.asyncio
    async def test_get_shipping_cost_for_method(self, calculator, uk_catalog):
        standard = uk_catalog["standard"]
        address = uk_address()

        assert await calculator.get_shipping_cost_for_method(standard.id, address, 1.0, 5000) == 500
        assert await calculator.get_shipping_cost_for_method(standard.id, address, 1.0, 10000) == 0
        assert await calculator.get_shipping_cost_for_method(9999, address, 1.0, 5000) is None

    @pytest.mark.asyncio
    async def test_supported_classes_whitelist(self, db, calculator, uk_catalog):
        uk_catalog["express"].method_metadata = {"supported_shipping_classes": ["standard"]}
        await db.flush()

        cart = FakeCart([FakeLine(FakeProduct(id=1, price=1000, shipping_class="fragile"))])
        quotes = await calculator.calculate_for_cart(cart, uk_address())

        assert "Express" not in [q.name for q in quotes]
        assert calculator.can_method_handle_shipping_class(uk_catalog["express"], ShippingClass.STANDARD)
        assert not calculator.can_method_handle_shipping_class(uk_catalog["express"], ShippingClass.FRAGILE)


class TestCheckoutOptions:
    """Test the checkout bundle."""

    @pytest.mark.asyncio
    async def test_checkout_options(self, calculator, uk_catalog):
        cart = FakeCart([
            FakeLine(FakeProduct(id=1, price=2000, weight=0.5, shipping_class="fragile"), quantity=2),
            FakeLine(FakeProduct(id=2, price=500, shippable=False)),
        ])
        options = await calculator.get_shipping_options_for_checkout(cart, uk_address())

        assert options.requires_shipping is True
        assert options.total_weight == pytest.approx(1.0)
        assert options.shipping_zone == "UK"
        assert options.shipping_classes == ["fragile"]
        assert options.restrictions == ["Fragile items - careful handling required"]
        assert options.cheapest_method.name == "Standard"
        assert options.fastest_method.name == "Overnight Express"

    @pytest.mark.asyncio
    async def test_checkout_options_virtual_cart(self, calculator, uk_catalog):
        cart = FakeCart([FakeLine(FakeProduct(id=1, shippable=False))])
        options = await calculator.get_shipping_options_for_checkout(cart, uk_address())

        assert options.requires_shipping is False
        assert options.available_methods == []
        assert options.shipping_zone is None
        assert options.cheapest_method is None
