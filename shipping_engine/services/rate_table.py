"""
Rate Table

Per (method, zone) tiered pricing keyed by weight (grams) and order total
(minor units). Bands are [min, max): a 1000g parcel falls in [1000, 5000),
never in [0, 1000).

Lookups are read-only. Two active, effective rates matching the same
lookup is a data integrity bug: the lowest id wins and a warning is
logged so the overlap can be fixed upstream. Creation paths reject
overlaps outright with RateConflictError.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_engine.core.exceptions import (
    NoShippingRateError,
    RateConflictError,
    ShippingValidationError,
)
from shipping_engine.models.method import ShippingMethod
from shipping_engine.models.rate import RateType, ShippingRate, as_utc
from shipping_engine.models.zone import ShippingZone

logger = logging.getLogger(__name__)

RATE_FIELDS = {
    "method_id",
    "zone_id",
    "rate_type",
    "rate",
    "percent",
    "min_weight_grams",
    "max_weight_grams",
    "min_total",
    "max_total",
    "free_threshold",
    "is_active",
    "starts_at",
    "ends_at",
}


def kg_to_grams(weight_kg: float) -> int:
    """Kilograms to whole grams, rounding half up."""
    grams = Decimal(str(weight_kg or 0)) * 1000
    return int(grams.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _ranges_overlap(a_min, a_max, b_min, b_max) -> bool:
    """Half-open [min, max) ranges; None max is unbounded."""
    a_below_b_end = b_max is None or a_min < b_max
    b_below_a_end = a_max is None or b_min < a_max
    return a_below_b_end and b_below_a_end


def _windows_overlap(a_start, a_end, b_start, b_end) -> bool:
    """Half-open [start, end) windows; None is open ended."""
    a_start, a_end, b_start, b_end = map(as_utc, (a_start, a_end, b_start, b_end))
    a_before_b_end = b_end is None or a_start is None or a_start < b_end
    b_before_a_end = a_end is None or b_start is None or b_start < a_end
    return a_before_b_end and b_before_a_end


@dataclass(frozen=True)
class RateBand:
    """The overlap-relevant fields of a rate, for new or stored rows."""
    method_id: int
    zone_id: int
    min_weight_grams: int
    max_weight_grams: Optional[int]
    min_total: int
    max_total: Optional[int]
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    rate_id: Optional[int] = None

    @classmethod
    def of(cls, rate: ShippingRate) -> "RateBand":
        return cls(
            method_id=rate.method_id,
            zone_id=rate.zone_id,
            min_weight_grams=rate.min_weight_grams or 0,
            max_weight_grams=rate.max_weight_grams,
            min_total=rate.min_total or 0,
            max_total=rate.max_total,
            starts_at=rate.starts_at,
            ends_at=rate.ends_at,
            rate_id=rate.id,
        )

    def overlaps(self, other: "RateBand") -> bool:
        if (self.method_id, self.zone_id) != (other.method_id, other.zone_id):
            return False
        return (
            _ranges_overlap(self.min_weight_grams, self.max_weight_grams, other.min_weight_grams, other.max_weight_grams)
            and _ranges_overlap(self.min_total, self.max_total, other.min_total, other.max_total)
            and _windows_overlap(self.starts_at, self.ends_at, other.starts_at, other.ends_at)
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "rate_id": self.rate_id,
            "method_id": self.method_id,
            "zone_id": self.zone_id,
            "weight": [self.min_weight_grams, self.max_weight_grams],
            "total": [self.min_total, self.max_total],
        }


def select_rate(
    rates: Iterable[ShippingRate],
    weight_grams: int,
    total: int,
    at: Optional[datetime] = None,
) -> Optional[ShippingRate]:
    """
    Pick the rate whose bands contain weight_grams and total.

    Only active rates effective at `at` are considered. Multiple matches
    resolve to the lowest id.
    """
    at = at or datetime.now(timezone.utc)
    matches = [
        r for r in rates
        if r.is_active and r.is_effective_at(at) and r.covers_weight(weight_grams) and r.covers_total(total)
    ]
    if not matches:
        return None
    matches.sort(key=lambda r: r.id)
    if len(matches) > 1:
        logger.warning(
            f"Overlapping shipping rates {[r.id for r in matches]} for method {matches[0].method_id} "
            f"zone {matches[0].zone_id} at {weight_grams}g / {total}; using rate {matches[0].id}"
        )
    return matches[0]


def calculate_cost(rate: ShippingRate, total: int) -> int:
    """Shipping cost in minor units for an order total."""
    if rate.free_threshold is not None and total >= rate.free_threshold:
        return 0
    if rate.rate_type == RateType.PERCENTAGE:
        cost = Decimal(str(rate.percent or 0)) * Decimal(total)
        return int(cost.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int(rate.rate or 0)


def validate_rate_fields(fields: Dict[str, Any]) -> None:
    """Reject malformed bands and amounts before any overlap check."""
    for name in ("method_id", "zone_id"):
        if fields.get(name) is None:
            raise ShippingValidationError(f"{name} is required", field=name)

    for low_name, high_name in (("min_weight_grams", "max_weight_grams"), ("min_total", "max_total")):
        low = fields.get(low_name) or 0
        high = fields.get(high_name)
        if low < 0:
            raise ShippingValidationError(f"{low_name} cannot be negative", field=low_name)
        if high is not None and high <= low:
            raise ShippingValidationError(
                f"{high_name} must be greater than {low_name}", field=high_name
            )

    rate_type = RateType(fields.get("rate_type") or RateType.FLAT)
    if rate_type == RateType.PERCENTAGE:
        percent = fields.get("percent")
        if percent is None or percent < 0:
            raise ShippingValidationError("Percentage rates need a non-negative percent", field="percent")
    elif (fields.get("rate") or 0) < 0:
        raise ShippingValidationError("rate cannot be negative", field="rate")

    free_threshold = fields.get("free_threshold")
    if free_threshold is not None and free_threshold < 0:
        raise ShippingValidationError("free_threshold cannot be negative", field="free_threshold")

    starts_at, ends_at = as_utc(fields.get("starts_at")), as_utc(fields.get("ends_at"))
    if starts_at is not None and ends_at is not None and ends_at <= starts_at:
        raise ShippingValidationError("ends_at must be after starts_at", field="ends_at")


def _band_from_fields(fields: Dict[str, Any], rate_id: Optional[int] = None) -> RateBand:
    return RateBand(
        method_id=fields["method_id"],
        zone_id=fields["zone_id"],
        min_weight_grams=fields.get("min_weight_grams") or 0,
        max_weight_grams=fields.get("max_weight_grams"),
        min_total=fields.get("min_total") or 0,
        max_total=fields.get("max_total"),
        starts_at=fields.get("starts_at"),
        ends_at=fields.get("ends_at"),
        rate_id=rate_id,
    )


class RateTable:
    """
    Rate lookups and rate administration.

    Administration methods flush; the caller commits.
    """

    def __init__(self, db: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ==================== Lookups ====================

    async def get_rates_for(
        self, method_id: int, zone_id: int, include_inactive: bool = False
    ) -> List[ShippingRate]:
        query = select(ShippingRate).where(
            ShippingRate.method_id == method_id,
            ShippingRate.zone_id == zone_id,
        ).order_by(ShippingRate.id)
        if not include_inactive:
            query = query.where(ShippingRate.is_active == True)  # noqa: E712
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def find_rate(
        self,
        method: ShippingMethod,
        zone: ShippingZone,
        weight_grams: int,
        total: int,
    ) -> Optional[ShippingRate]:
        rates = await self.get_rates_for(method.id, zone.id)
        rate = select_rate(rates, weight_grams, total, at=self._clock())
        if rate is None:
            logger.debug(f"No rate for method {method.id} zone {zone.id} at {weight_grams}g / {total}")
        return rate

    @staticmethod
    def calculate_cost(rate: ShippingRate, total: int) -> int:
        return calculate_cost(rate, total)

    async def calculate_for_zone(
        self, method_id: int, zone_id: int, weight_kg: float, total: int
    ) -> Dict[str, Any]:
        """Operator cost check for an explicit method and zone."""
        method = await self.db.get(ShippingMethod, method_id)
        zone = await self.db.get(ShippingZone, zone_id)
        if method is None or zone is None:
            raise ShippingValidationError(
                "Unknown shipping method or zone",
                details={"method_id": method_id, "zone_id": zone_id},
            )

        rate = await self.find_rate(method, zone, kg_to_grams(weight_kg), total)
        if rate is None:
            raise NoShippingRateError(
                "No shipping rate found for the specified criteria.",
                details={"method_id": method_id, "zone_id": zone_id, "weight_kg": weight_kg, "total": total},
            )

        cost = calculate_cost(rate, total)
        return {
            "rate_id": rate.id,
            "weight_kg": weight_kg,
            "total": total,
            "shipping_cost": cost,
            "is_free": cost == 0,
            "free_threshold_met": rate.free_threshold is not None and total >= rate.free_threshold,
        }

    # ==================== Overlap detection ====================

    async def find_conflicts(self, band: RateBand, exclude_ids: Sequence[int] = ()) -> List[RateBand]:
        """Active stored bands that overlap `band`."""
        existing = await self.get_rates_for(band.method_id, band.zone_id)
        return [
            RateBand.of(r) for r in existing
            if r.id not in exclude_ids and RateBand.of(r).overlaps(band)
        ]

    async def _assert_no_conflicts(self, band: RateBand, exclude_ids: Sequence[int] = ()) -> None:
        conflicts = await self.find_conflicts(band, exclude_ids)
        if conflicts:
            raise RateConflictError(
                "Overlapping rate already exists for this method/zone combination.",
                conflicts=[{"new": band.describe(), "existing": c.describe()} for c in conflicts],
            )

    # ==================== Administration ====================

    async def create_rate(self, **fields: Any) -> ShippingRate:
        unknown = set(fields) - RATE_FIELDS
        if unknown:
            raise ShippingValidationError(f"Unknown rate fields: {sorted(unknown)}")
        validate_rate_fields(fields)

        if fields.get("is_active", True):
            await self._assert_no_conflicts(_band_from_fields(fields))

        rate = ShippingRate(**fields)
        self.db.add(rate)
        await self.db.flush()
        logger.info(f"Created shipping rate {rate.id} for method {rate.method_id} zone {rate.zone_id}")
        return rate

    async def bulk_create_rates(self, rates_data: Sequence[Dict[str, Any]]) -> List[ShippingRate]:
        """
        Create many rates, all or nothing.

        Every conflict, against stored rates or between rows of the batch,
        is reported in the raised RateConflictError.
        """
        conflicts: List[Dict[str, Any]] = []
        accepted: List[Tuple[int, RateBand]] = []

        for index, fields in enumerate(rates_data):
            unknown = set(fields) - RATE_FIELDS
            if unknown:
                raise ShippingValidationError(f"Rate {index}: unknown fields {sorted(unknown)}")
            try:
                validate_rate_fields(fields)
            except ShippingValidationError as e:
                raise ShippingValidationError(f"Rate {index}: {e.message}", details=e.details)

            if not fields.get("is_active", True):
                continue

            band = _band_from_fields(fields)
            for existing in await self.find_conflicts(band):
                conflicts.append({"index": index, "new": band.describe(), "existing": existing.describe()})
            for other_index, other in accepted:
                if other.overlaps(band):
                    conflicts.append({"index": index, "new": band.describe(), "batch_index": other_index})
            accepted.append((index, band))

        if conflicts:
            logger.warning(f"Bulk rate create rejected: {len(conflicts)} conflict(s) in {len(rates_data)} rate(s)")
            raise RateConflictError(
                "Some rates could not be created due to conflicts.",
                conflicts=conflicts,
            )

        rates = [ShippingRate(**fields) for fields in rates_data]
        self.db.add_all(rates)
        await self.db.flush()
        logger.info(f"Bulk created {len(rates)} shipping rate(s)")
        return rates

    async def update_rate(self, rate: ShippingRate, **changes: Any) -> ShippingRate:
        unknown = set(changes) - RATE_FIELDS
        if unknown:
            raise ShippingValidationError(f"Unknown rate fields: {sorted(unknown)}")

        merged = {name: getattr(rate, name) for name in RATE_FIELDS}
        merged.update(changes)
        validate_rate_fields(merged)

        if merged.get("is_active"):
            await self._assert_no_conflicts(_band_from_fields(merged, rate.id), exclude_ids=[rate.id])

        for key, value in changes.items():
            setattr(rate, key, value)
        await self.db.flush()
        logger.info(f"Updated shipping rate {rate.id}: {sorted(changes)}")
        return rate

    async def activate_rate(self, rate: ShippingRate) -> ShippingRate:
        return await self.update_rate(rate, is_active=True)

    async def deactivate_rate(self, rate: ShippingRate) -> ShippingRate:
        return await self.update_rate(rate, is_active=False)

    async def delete_rate(self, rate: ShippingRate) -> None:
        rate_id = rate.id
        await self.db.delete(rate)
        await self.db.flush()
        logger.info(f"Deleted shipping rate {rate_id}")

    async def bulk_update_rates(
        self,
        rate_ids: Sequence[int],
        rate: Optional[int] = None,
        free_threshold: Any = ...,
        is_active: Optional[bool] = None,
    ) -> int:
        """
        Apply price/threshold/active changes to many rates.

        free_threshold=None clears the threshold; leave it out to keep it.
        """
        changes: Dict[str, Any] = {}
        if rate is not None:
            changes["rate"] = rate
        if free_threshold is not ...:
            changes["free_threshold"] = free_threshold
        if is_active is not None:
            changes["is_active"] = is_active
        if not changes:
            raise ShippingValidationError("No valid updates provided.")

        result = await self.db.execute(select(ShippingRate).where(ShippingRate.id.in_(rate_ids)))
        rows = list(result.scalars().all())
        for row in rows:
            await self.update_rate(row, **changes)
        return len(rows)

    async def duplicate_rate_to_zones(self, rate: ShippingRate, zone_ids: Sequence[int]) -> List[ShippingRate]:
        """
        Copy a rate into other zones.

        The source zone and zones where the copy would overlap an existing
        rate are skipped.
        """
        copies = []
        for zone_id in zone_ids:
            if zone_id == rate.zone_id:
                continue
            fields = {name: getattr(rate, name) for name in RATE_FIELDS}
            fields["zone_id"] = zone_id
            if await self.find_conflicts(_band_from_fields(fields)):
                logger.info(f"Skipped duplicating rate {rate.id} to zone {zone_id}: overlapping rate exists")
                continue
            copy = ShippingRate(**fields)
            self.db.add(copy)
            copies.append(copy)

        await self.db.flush()
        logger.info(f"Duplicated rate {rate.id} to {len(copies)} zone(s)")
        return copies
