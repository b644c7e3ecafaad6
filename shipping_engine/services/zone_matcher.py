"""
Zone Matcher

Resolves a destination address to at most one active shipping zone.
Zones are checked in display_order (then id); the first zone whose country,
region and postcode rules all accept the address wins. No match is a normal
outcome (destination not served), never an exception.

Also holds zone administration (create/update/toggle/reorder and
method attachment), which callers commit.
"""
import fnmatch
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_engine.core.exceptions import (
    MethodAlreadyAttachedError,
    ShippingValidationError,
)
from shipping_engine.models.address import ShippingAddress
from shipping_engine.models.method import ShippingMethod
from shipping_engine.models.zone import ShippingZone, ShippingZoneMethod

logger = logging.getLogger(__name__)

WILDCARD_COUNTRY = "*"


def _normalize_pattern(pattern: str) -> str:
    return str(pattern).strip().upper().replace(" ", "")


def postcode_matches(postcode: str, pattern: str) -> bool:
    """
    Match a postcode against a zone pattern.

    Patterns with * or ? are globs ("SW1*", "BT?"); anything else is a
    prefix ("BT" covers "BT1 1AA"). Spaces are ignored on both sides.
    """
    value = _normalize_pattern(postcode)
    pattern = _normalize_pattern(pattern)
    if not pattern:
        return False
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(value, pattern)
    return value.startswith(pattern)


def zone_matches(zone: ShippingZone, address: ShippingAddress) -> bool:
    """Check one zone's country, region and postcode rules against an address."""
    countries = {str(c).strip().upper() for c in (zone.countries or [])}
    country = address.country_code
    if not country or (country not in countries and WILDCARD_COUNTRY not in countries):
        return False

    if zone.regions:
        regions = {str(r).strip().upper() for r in zone.regions}
        if address.region_code is None:
            logger.debug(f"Zone {zone.id} requires a region; address has none")
            return False
        if address.region_code not in regions:
            return False

    postcode = address.normalized_postcode
    if zone.postcodes:
        if not postcode:
            logger.debug(f"Zone {zone.id} requires a postcode; address has none")
            return False
        if not any(postcode_matches(postcode, p) for p in zone.postcodes):
            return False

    if zone.excluded_postcodes and postcode:
        if any(postcode_matches(postcode, p) for p in zone.excluded_postcodes):
            return False

    return True


def match_zone(zones: Iterable[ShippingZone], address: ShippingAddress) -> Optional[ShippingZone]:
    """First active zone (in the given order) that accepts the address."""
    for zone in zones:
        if zone.is_active and zone_matches(zone, address):
            return zone
    return None


def _validate_countries(countries: Sequence[str]) -> List[str]:
    if not countries:
        raise ShippingValidationError("A zone needs at least one country", field="countries")
    normalized = []
    for code in countries:
        code = str(code).strip().upper()
        if code != WILDCARD_COUNTRY and (len(code) != 2 or not code.isalpha()):
            raise ShippingValidationError(
                f"Invalid country code {code!r}; use ISO-3166 alpha-2 or '*'",
                field="countries",
            )
        if code not in normalized:
            normalized.append(code)
    return normalized


class ZoneMatcher:
    """Loads active zones and resolves addresses to zones."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active_zones(self) -> List[ShippingZone]:
        result = await self.db.execute(
            select(ShippingZone)
            .where(ShippingZone.is_active == True)  # noqa: E712
            .order_by(ShippingZone.display_order, ShippingZone.id)
        )
        return list(result.scalars().all())

    async def resolve_zone(self, address: ShippingAddress) -> Optional[ShippingZone]:
        """
        Resolve the zone for an address.

        The result is cached on the address until a zone-relevant field
        changes.
        """
        cached = address.cached_zone()
        if cached is not None:
            return cached

        zone = match_zone(await self.get_active_zones(), address)
        if zone is None:
            logger.info(f"No shipping zone covers {address.country_code} {address.normalized_postcode or ''}".rstrip())
        else:
            logger.debug(f"Address in {address.country_code} resolved to zone {zone.id} ({zone.name})")
        address.cache_zone(zone)
        return zone

    async def list_methods_for_zone(self, zone: ShippingZone) -> List[ShippingMethod]:
        """Active methods attached (actively) to the zone, in attachment then method order."""
        result = await self.db.execute(
            select(ShippingMethod)
            .join(ShippingZoneMethod, ShippingZoneMethod.method_id == ShippingMethod.id)
            .where(
                ShippingZoneMethod.zone_id == zone.id,
                ShippingZoneMethod.is_active == True,  # noqa: E712
                ShippingMethod.is_active == True,  # noqa: E712
            )
            .order_by(
                ShippingZoneMethod.sort_order,
                ShippingMethod.display_order,
                ShippingMethod.id,
            )
        )
        return list(result.scalars().unique().all())


class ZoneAdmin:
    """Operator-side zone management. Flushes; the caller commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_zone(self, zone_id: int) -> ShippingZone:
        zone = await self.db.get(ShippingZone, zone_id)
        if zone is None:
            raise ShippingValidationError(f"Shipping zone {zone_id} not found", field="zone_id")
        return zone

    async def create_zone(
        self,
        name: str,
        countries: Sequence[str],
        regions: Optional[Sequence[str]] = None,
        postcodes: Optional[Sequence[str]] = None,
        excluded_postcodes: Optional[Sequence[str]] = None,
        display_order: Optional[int] = None,
        is_active: bool = True,
        description: Optional[str] = None,
    ) -> ShippingZone:
        if not name or not name.strip():
            raise ShippingValidationError("Zone name is required", field="name")

        if display_order is None:
            result = await self.db.execute(select(ShippingZone.display_order))
            orders = [o for o in result.scalars().all() if o is not None]
            display_order = (max(orders) + 1) if orders else 0

        zone = ShippingZone(
            name=name.strip(),
            description=description,
            countries=_validate_countries(countries),
            regions=[r.strip().upper() for r in regions] if regions else None,
            postcodes=list(postcodes) if postcodes else None,
            excluded_postcodes=list(excluded_postcodes) if excluded_postcodes else None,
            display_order=display_order,
            is_active=is_active,
        )
        self.db.add(zone)
        await self.db.flush()
        logger.info(f"Created shipping zone {zone.id} ({zone.name}) for {zone.countries}")
        return zone

    async def update_zone(self, zone: ShippingZone, **changes: Any) -> ShippingZone:
        allowed = {"name", "description", "countries", "regions", "postcodes", "excluded_postcodes", "display_order", "is_active"}
        unknown = set(changes) - allowed
        if unknown:
            raise ShippingValidationError(f"Unknown zone fields: {sorted(unknown)}")

        if "countries" in changes:
            changes["countries"] = _validate_countries(changes["countries"])
        if changes.get("regions"):
            changes["regions"] = [r.strip().upper() for r in changes["regions"]]

        for key, value in changes.items():
            setattr(zone, key, value)
        await self.db.flush()
        logger.info(f"Updated shipping zone {zone.id}: {sorted(changes)}")
        return zone

    async def activate_zone(self, zone: ShippingZone) -> ShippingZone:
        return await self.update_zone(zone, is_active=True)

    async def deactivate_zone(self, zone: ShippingZone) -> ShippingZone:
        return await self.update_zone(zone, is_active=False)

    async def reorder_zones(self, zone_ids: Sequence[int]) -> List[ShippingZone]:
        """Set display_order to the position of each id in zone_ids."""
        if len(set(zone_ids)) != len(zone_ids):
            raise ShippingValidationError("Duplicate zone ids in reorder request", field="zone_ids")

        result = await self.db.execute(select(ShippingZone).where(ShippingZone.id.in_(zone_ids)))
        zones: Dict[int, ShippingZone] = {z.id: z for z in result.scalars().all()}
        missing = [zid for zid in zone_ids if zid not in zones]
        if missing:
            raise ShippingValidationError(f"Unknown zone ids: {missing}", field="zone_ids")

        for position, zone_id in enumerate(zone_ids):
            zones[zone_id].display_order = position
        await self.db.flush()
        return [zones[zid] for zid in zone_ids]

    async def _get_link(self, zone: ShippingZone, method: ShippingMethod) -> Optional[ShippingZoneMethod]:
        result = await self.db.execute(
            select(ShippingZoneMethod).where(
                ShippingZoneMethod.zone_id == zone.id,
                ShippingZoneMethod.method_id == method.id,
            )
        )
        return result.scalar_one_or_none()

    async def attach_method(
        self,
        zone: ShippingZone,
        method: ShippingMethod,
        sort_order: int = 0,
        is_active: bool = True,
    ) -> ShippingZoneMethod:
        if await self._get_link(zone, method) is not None:
            raise MethodAlreadyAttachedError(
                f"Shipping method {method.name!r} is already attached to zone {zone.name!r}",
                details={"zone_id": zone.id, "method_id": method.id},
            )
        link = ShippingZoneMethod(
            zone_id=zone.id,
            method_id=method.id,
            sort_order=sort_order,
            is_active=is_active,
        )
        self.db.add(link)
        await self.db.flush()
        logger.info(f"Attached method {method.id} to zone {zone.id}")
        return link

    async def detach_method(self, zone: ShippingZone, method: ShippingMethod) -> None:
        link = await self._get_link(zone, method)
        if link is None:
            raise ShippingValidationError(
                f"Shipping method {method.name!r} is not attached to zone {zone.name!r}",
                details={"zone_id": zone.id, "method_id": method.id},
            )
        await self.db.delete(link)
        await self.db.flush()
        logger.info(f"Detached method {method.id} from zone {zone.id}")
