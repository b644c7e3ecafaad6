"""
Shipping Calculator

Turns a cart, order or product list plus a destination into the list of
shipping methods that can legally carry it, each with a cost and a
delivery estimate.

Steps:
1. keep shippable lines only; an all-virtual basket returns [] before any
   zone lookup
2. sum weight (kg x qty) and value (price x qty) of shippable lines
3. collect the distinct shipping classes
4. resolve the zone; no zone returns []
5. for each method attached to the zone, look up a rate at weight-in-grams
   and value; methods without a rate are dropped
6. compute cost, free flag and the delivery window
7. drop methods ruled out by special handling
8. keep method display order unless cheapest/fastest ordering is asked for

"No data" is an empty list here, never an exception.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from shipping_engine.core.config import Settings, get_settings
from shipping_engine.models.address import ShippingAddress
from shipping_engine.models.method import ShippingMethod
from shipping_engine.models.shipping_class import ShippingClass, collect_shipping_classes
from shipping_engine.models.zone import ShippingZone
from shipping_engine.modules.shipping.contracts import Cart, Order, ShippableProduct
from shipping_engine.services import special_handling
from shipping_engine.services.rate_table import RateTable, calculate_cost, kg_to_grams
from shipping_engine.services.zone_matcher import ZoneMatcher

logger = logging.getLogger(__name__)


class QuoteSort(str, enum.Enum):
    DISPLAY = "display"
    CHEAPEST = "cheapest"
    FASTEST = "fastest"


@dataclass
class MethodQuote:
    """One available shipping method with its computed cost."""
    method_id: int
    name: str
    carrier: Optional[str]
    service_code: Optional[str]
    cost: int
    currency: str
    is_free: bool
    rate_id: int
    zone_id: int
    position: int
    description: Optional[str] = None
    estimated_days_min: Optional[int] = None
    estimated_days_max: Optional[int] = None
    estimated_delivery: Optional[str] = None
    estimated_date_min: Optional[date] = None
    estimated_date_max: Optional[date] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.method_id,
            "name": self.name,
            "description": self.description,
            "carrier": self.carrier,
            "service_code": self.service_code,
            "cost": self.cost,
            "currency": self.currency,
            "is_free": self.is_free,
            "estimated_days_min": self.estimated_days_min,
            "estimated_days_max": self.estimated_days_max,
            "estimated_delivery": self.estimated_delivery,
            "estimated_date_min": self.estimated_date_min.isoformat() if self.estimated_date_min else None,
            "estimated_date_max": self.estimated_date_max.isoformat() if self.estimated_date_max else None,
            "rate_id": self.rate_id,
            "zone_id": self.zone_id,
            "metadata": self.metadata,
        }


@dataclass
class ShipmentFacts:
    """Aggregates of the shippable lines in a basket."""
    requires_shipping: bool
    weight_kg: float
    total: int
    shipping_classes: Set[ShippingClass]
    item_count: int = 0

    @property
    def weight_grams(self) -> int:
        return kg_to_grams(self.weight_kg)


@dataclass
class CheckoutOptions:
    available_methods: List[MethodQuote]
    cheapest_method: Optional[MethodQuote]
    fastest_method: Optional[MethodQuote]
    requires_shipping: bool
    total_weight: float
    shipping_classes: List[str]
    shipping_zone: Optional[str]
    restrictions: List[str]


# (product, quantity, unit price in minor units)
Line = Tuple[ShippableProduct, int, int]


def summarize_lines(lines: Iterable[Line]) -> ShipmentFacts:
    """Weight, value and classes of the lines that require shipping."""
    weight = 0.0
    total = 0
    count = 0
    raw_classes = []
    for product, quantity, unit_price in lines:
        if not product.requires_shipping():
            continue
        count += quantity
        weight += float(product.weight or 0) * quantity
        total += int(unit_price) * quantity
        raw_classes.append(product.shipping_class)

    return ShipmentFacts(
        requires_shipping=count > 0,
        weight_kg=weight,
        total=total,
        shipping_classes=collect_shipping_classes(raw_classes) if count else set(),
        item_count=count,
    )


def _line_items(items: Iterable[Any]) -> List[Line]:
    lines = []
    for item in items:
        unit_price = getattr(item, "unit_price", None)
        if unit_price is None:
            unit_price = item.product.price
        lines.append((item.product, item.quantity, unit_price))
    return lines


def cheapest(quotes: Sequence[MethodQuote]) -> Optional[MethodQuote]:
    return min(quotes, key=lambda q: (q.cost, q.position), default=None)


def _speed_key(quote: MethodQuote):
    missing = 10 ** 6
    days_min = quote.estimated_days_min if quote.estimated_days_min is not None else missing
    days_max = quote.estimated_days_max if quote.estimated_days_max is not None else days_min
    return (days_min, days_max, quote.cost, quote.position)


def fastest(quotes: Sequence[MethodQuote]) -> Optional[MethodQuote]:
    return min(quotes, key=_speed_key, default=None)


def sort_quotes(quotes: List[MethodQuote], sort: QuoteSort) -> List[MethodQuote]:
    if sort == QuoteSort.CHEAPEST:
        return sorted(quotes, key=lambda q: (q.cost, q.position))
    if sort == QuoteSort.FASTEST:
        return sorted(quotes, key=_speed_key)
    return sorted(quotes, key=lambda q: q.position)


class ShippingCalculator:
    """
    Checkout and fulfillment-time shipping quotes.

    Read-only: uses the session for zone, method and rate lookups only.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        zone_matcher: Optional[ZoneMatcher] = None,
        rate_table: Optional[RateTable] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.zones = zone_matcher or ZoneMatcher(db)
        self.rates = rate_table or RateTable(db, clock=self._clock)

    # ==================== Core ====================

    def _quote(self, method: ShippingMethod, zone: ShippingZone, rate, total: int, position: int, now: datetime) -> MethodQuote:
        cost = calculate_cost(rate, total)
        earliest, latest = method.delivery_window(now)
        return MethodQuote(
            method_id=method.id,
            name=method.name,
            description=method.description,
            carrier=method.carrier,
            service_code=method.service_code,
            cost=cost,
            currency=self.settings.CURRENCY,
            is_free=cost == 0,
            rate_id=rate.id,
            zone_id=zone.id,
            position=position,
            estimated_days_min=method.estimated_days_min,
            estimated_days_max=method.estimated_days_max,
            estimated_delivery=method.estimated_delivery_label,
            estimated_date_min=earliest.date() if earliest else None,
            estimated_date_max=latest.date() if latest else None,
            metadata=dict(method.method_metadata or {}),
        )

    async def quotes_for_zone(
        self,
        zone: ShippingZone,
        weight_kg: float,
        total: int,
        shipping_classes: Optional[Iterable[ShippingClass]] = None,
        sort: QuoteSort = QuoteSort.DISPLAY,
    ) -> List[MethodQuote]:
        """Priced, filtered quotes for every method attached to the zone."""
        classes = set(shipping_classes or ())
        weight_grams = kg_to_grams(weight_kg)
        now = self._clock()
        quotes = []

        for position, method in enumerate(await self.zones.list_methods_for_zone(zone)):
            rate = await self.rates.find_rate(method, zone, weight_grams, total)
            if rate is None:
                continue

            reason = special_handling.exclusion_reason(method, classes) if classes else None
            if reason:
                logger.debug(f"Method {method.id} ({method.name}) excluded: {reason}")
                continue

            quote = self._quote(method, zone, rate, total, position, now)
            logger.debug(f"Quote method={method.id} zone={zone.id} rate={rate.id} cost={quote.cost}")
            quotes.append(quote)

        return sort_quotes(quotes, sort)

    async def _calculate(self, facts: ShipmentFacts, address: ShippingAddress, sort: QuoteSort) -> List[MethodQuote]:
        if not facts.requires_shipping:
            return []

        zone = await self.zones.resolve_zone(address)
        if zone is None:
            return []

        return await self.quotes_for_zone(zone, facts.weight_kg, facts.total, facts.shipping_classes, sort)

    # ==================== Public operations ====================

    async def calculate_for_cart(
        self, cart: Cart, address: ShippingAddress, sort: QuoteSort = QuoteSort.DISPLAY
    ) -> List[MethodQuote]:
        return await self._calculate(summarize_lines(_line_items(cart.items)), address, sort)

    async def calculate_for_order(
        self,
        order: Order,
        address: Optional[ShippingAddress] = None,
        sort: QuoteSort = QuoteSort.DISPLAY,
    ) -> List[MethodQuote]:
        address = address or order.shipping_address
        if address is None:
            return []
        return await self._calculate(summarize_lines(_line_items(order.items)), address, sort)

    async def calculate_for_products(
        self,
        products: Sequence[ShippableProduct],
        address: ShippingAddress,
        quantities: Optional[Union[Sequence[int], Mapping[Any, int]]] = None,
        sort: QuoteSort = QuoteSort.DISPLAY,
    ) -> List[MethodQuote]:
        """
        Quote a product list.

        quantities is either positional (same order as products) or keyed
        by product id; missing entries count as 1.
        """
        lines = []
        for index, product in enumerate(products):
            if isinstance(quantities, Mapping):
                quantity = quantities.get(product.id, 1)
            elif quantities is not None and index < len(quantities):
                quantity = quantities[index]
            else:
                quantity = 1
            lines.append((product, quantity, product.price))
        return await self._calculate(summarize_lines(lines), address, sort)

    async def get_quick_estimate(
        self,
        country: str,
        postcode: str,
        weight_kg: float,
        value: int,
        region: Optional[str] = None,
        shipping_classes: Optional[Iterable[ShippingClass]] = None,
        sort: QuoteSort = QuoteSort.DISPLAY,
    ) -> List[MethodQuote]:
        """
        Estimate without a cart or order.

        Builds a throwaway address from country/postcode (and region when
        the caller has it). Zones that require a region do not match a
        region-less estimate address; the next zone in order is tried.
        """
        address = ShippingAddress.for_estimate(country, postcode, region)
        zone = await self.zones.resolve_zone(address)
        if zone is None:
            return []
        return await self.quotes_for_zone(zone, weight_kg, value, shipping_classes, sort)

    async def get_cheapest_method(
        self, address: ShippingAddress, weight_kg: float, value: int
    ) -> Optional[MethodQuote]:
        return cheapest(await self.get_quick_estimate(address.country, address.postcode, weight_kg, value, address.region))

    async def get_fastest_method(
        self, address: ShippingAddress, weight_kg: float, value: int
    ) -> Optional[MethodQuote]:
        return fastest(await self.get_quick_estimate(address.country, address.postcode, weight_kg, value, address.region))

    async def _method_in_zone(self, method_id: int, address: ShippingAddress):
        zone = await self.zones.resolve_zone(address)
        if zone is None:
            return None, None
        for method in await self.zones.list_methods_for_zone(zone):
            if method.id == method_id:
                return zone, method
        return zone, None

    async def validate_shipping_method(
        self,
        method_id: int,
        address: ShippingAddress,
        weight_kg: float = 0,
        total: int = 0,
        shipping_classes: Optional[Iterable[ShippingClass]] = None,
    ) -> bool:
        """True if the method is active, serves the address's zone, has a rate and can carry the classes."""
        zone, method = await self._method_in_zone(method_id, address)
        if method is None:
            return False
        if shipping_classes and not special_handling.is_method_allowed(method, shipping_classes):
            return False
        return await self.rates.find_rate(method, zone, kg_to_grams(weight_kg), total) is not None

    async def get_shipping_cost_for_method(
        self,
        method_id: int,
        address: ShippingAddress,
        weight_kg: float = 0,
        total: int = 0,
    ) -> Optional[int]:
        """Cost in minor units, or None when no zone/method/rate applies."""
        zone, method = await self._method_in_zone(method_id, address)
        if method is None:
            return None
        rate = await self.rates.find_rate(method, zone, kg_to_grams(weight_kg), total)
        if rate is None:
            return None
        return calculate_cost(rate, total)

    async def get_shipping_options_for_checkout(self, cart: Cart, address: ShippingAddress) -> CheckoutOptions:
        facts = summarize_lines(_line_items(cart.items))
        quotes = await self._calculate(facts, address, QuoteSort.DISPLAY)
        zone = await self.zones.resolve_zone(address) if facts.requires_shipping else None
        classes = [c.value for c in ShippingClass if c in facts.shipping_classes]

        return CheckoutOptions(
            available_methods=quotes,
            cheapest_method=cheapest(quotes),
            fastest_method=fastest(quotes),
            requires_shipping=facts.requires_shipping,
            total_weight=facts.weight_kg,
            shipping_classes=classes,
            shipping_zone=zone.name if zone else None,
            restrictions=self.get_shipping_restrictions(facts.shipping_classes),
        )

    @staticmethod
    def get_shipping_restrictions(shipping_classes: Iterable[ShippingClass]) -> List[str]:
        return special_handling.get_shipping_restrictions(shipping_classes)

    @staticmethod
    def can_method_handle_shipping_class(method: ShippingMethod, shipping_class: ShippingClass) -> bool:
        return method.supports_shipping_class(shipping_class)
