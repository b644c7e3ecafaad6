"""
ShippingAddress value object.

Addresses belong to the address book (out of scope); the engine receives
them as plain values. The resolved zone is cached on the instance and
dropped whenever a field that affects zone matching changes.
"""
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional

# Countries whose postcodes are compared with internal spaces removed
SPACE_INSENSITIVE_POSTCODE_COUNTRIES = {"GB", "IE", "NL", "CA"}


def normalize_country(country: Optional[str]) -> str:
    return (country or "").strip().upper()


def normalize_postcode(postcode: Optional[str], country: Optional[str] = None) -> str:
    """Uppercase, trimmed postcode; spaces removed where they carry no meaning."""
    value = (postcode or "").strip().upper()
    if normalize_country(country) in SPACE_INSENSITIVE_POSTCODE_COUNTRIES:
        value = value.replace(" ", "")
    return value


@dataclass
class ShippingAddress:
    country: str
    postcode: str = ""
    name: Optional[str] = None
    company: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None  # county/state/subdivision code
    phone: Optional[str] = None
    email: Optional[str] = None
    is_validated: bool = False
    validation_messages: List[str] = field(default_factory=list)

    _zone_cache: Any = field(default=None, init=False, repr=False, compare=False)

    @classmethod
    def for_estimate(
        cls, country: str, postcode: str = "", region: Optional[str] = None
    ) -> "ShippingAddress":
        """Throwaway address used only to resolve a zone for an estimate."""
        return cls(country=normalize_country(country), postcode=postcode or "", region=region)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShippingAddress":
        known = {f.name for f in fields(cls) if f.init}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def country_code(self) -> str:
        return normalize_country(self.country)

    @property
    def normalized_postcode(self) -> str:
        return normalize_postcode(self.postcode, self.country)

    @property
    def region_code(self) -> Optional[str]:
        return self.region.strip().upper() if self.region else None

    @property
    def zone_key(self) -> tuple:
        return (self.country_code, self.region_code, self.normalized_postcode)

    def cached_zone(self):
        """Zone resolved for the current zone-relevant fields, if any."""
        if self._zone_cache is None:
            return None
        key, zone = self._zone_cache
        return zone if key == self.zone_key else None

    def cache_zone(self, zone) -> None:
        self._zone_cache = (self.zone_key, zone) if zone is not None else None

    def apply_validation(
        self, normalized: Optional["ShippingAddress"], messages: Optional[List[str]] = None
    ) -> "ShippingAddress":
        """
        Return a copy with carrier-normalized fields replacing raw input.

        Fields the carrier left empty keep their original value.
        """
        updates = {}
        if normalized is not None:
            for name in ("name", "company", "line1", "line2", "city", "region", "postcode", "country", "phone", "email"):
                value = getattr(normalized, name)
                if value:
                    updates[name] = value
        validated = replace(self, is_validated=True, validation_messages=list(messages or []), **updates)
        validated._zone_cache = None
        return validated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "company": self.company,
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "region": self.region,
            "postcode": self.postcode,
            "country": self.country_code,
            "phone": self.phone,
            "email": self.email,
        }
