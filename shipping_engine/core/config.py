"""
Application configuration

SECURITY: Defaults are fail-safe for production.
- DEBUG defaults to False
- DATABASE_URL has no default (will fail if not set)
- Carrier credentials are never defaulted; a missing key surfaces as a
  CarrierConfigurationError when the gateway is used.

Settings are built once via get_settings() and passed explicitly into
service constructors. Services never read a module-level settings object.
"""
import json
import logging
from functools import lru_cache
from typing import List, Union

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_ENABLED_CARRIERS = ["SHIPPO"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # App - defaults are PRODUCTION safe
    APP_NAME: str = "Shipping Engine"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database - NO DEFAULT (will fail if not set)
    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v):
        """Convert postgres:// URLs to the asyncpg driver format."""
        if not v:
            return v
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # 1 hour

    # Money is integer minor units everywhere; this is only a label
    CURRENCY: str = "GBP"

    # Carrier aggregator (Shippo)
    SHIPPO_API_KEY: str = ""
    SHIPPO_API_BASE: str = "https://api.goshippo.com"
    SHIPPO_ENVIRONMENT: str = "test"  # test or live
    SHIPPO_WEBHOOK_TOKEN: str = ""
    CARRIER_TIMEOUT_SECONDS: float = 20.0
    CARRIER_LABEL_FILE_TYPE: str = "PDF"
    DEFAULT_TRACKING_CARRIER: str = "usps"

    # Accepts JSON array or comma-separated string
    ENABLED_CARRIERS: Union[str, List[str]] = DEFAULT_ENABLED_CARRIERS

    @field_validator("ENABLED_CARRIERS", mode="before")
    @classmethod
    def parse_enabled_carriers(cls, v):
        if isinstance(v, list):
            return [c.strip().upper() for c in v if c and c.strip()]
        if isinstance(v, str):
            if not v.strip():
                return list(DEFAULT_ENABLED_CARRIERS)
            if v.startswith("["):
                try:
                    return [c.strip().upper() for c in json.loads(v)]
                except json.JSONDecodeError:
                    pass
            return [c.strip().upper() for c in v.split(",") if c.strip()]
        return v

    # Platform default ship-from address (used when no vendor address exists)
    SHIP_FROM_NAME: str = "Shipping Engine"
    SHIP_FROM_COMPANY: str = ""
    SHIP_FROM_LINE1: str = ""
    SHIP_FROM_LINE2: str = ""
    SHIP_FROM_CITY: str = ""
    SHIP_FROM_REGION: str = ""
    SHIP_FROM_POSTCODE: str = ""
    SHIP_FROM_COUNTRY: str = "GB"
    SHIP_FROM_PHONE: str = ""
    SHIP_FROM_EMAIL: str = ""

    # Parcel floors so a carrier never sees a zero-size parcel
    MIN_PARCEL_LENGTH_CM: float = 10.0
    MIN_PARCEL_WIDTH_CM: float = 10.0
    MIN_PARCEL_HEIGHT_CM: float = 5.0
    MIN_PARCEL_WEIGHT_KG: float = 0.1

    # Background jobs
    TRACKING_SYNC_INTERVAL_SECONDS: int = 900  # 15 minutes
    TRACKING_SYNC_BATCH_SIZE: int = 50
    TRACKING_SYNC_MIN_AGE_MINUTES: int = 30
    LABEL_RETRY_INTERVAL_SECONDS: int = 600  # 10 minutes
    LABEL_RETRY_MAX_ATTEMPTS: int = 3

    @model_validator(mode="after")
    def validate_production_config(self):
        """Runtime validation to catch unsafe production configurations."""
        if self.ENVIRONMENT == "production":
            errors = []

            if self.DEBUG:
                errors.append(
                    "DEBUG=True is forbidden in production. "
                    "Set DEBUG=false or ENVIRONMENT=development"
                )

            if self.SHIPPO_ENVIRONMENT not in ("test", "live"):
                errors.append(f"SHIPPO_ENVIRONMENT must be 'test' or 'live', got '{self.SHIPPO_ENVIRONMENT}'")

            if "localhost" in self.DATABASE_URL or "127.0.0.1" in self.DATABASE_URL:
                errors.append(
                    "Localhost DATABASE_URL detected in production. "
                    "Configure proper database connection."
                )

            if errors:
                raise ValueError(
                    "PRODUCTION CONFIGURATION VIOLATIONS:\n" + "\n".join(f"  - {e}" for e in errors)
                )

        return self

    @property
    def is_carrier_test_mode(self) -> bool:
        return self.SHIPPO_ENVIRONMENT == "test"

    def ship_from_address(self) -> dict:
        """Platform default ship-from address fields."""
        return {
            "name": self.SHIP_FROM_NAME,
            "company": self.SHIP_FROM_COMPANY or self.SHIP_FROM_NAME,
            "line1": self.SHIP_FROM_LINE1,
            "line2": self.SHIP_FROM_LINE2 or None,
            "city": self.SHIP_FROM_CITY,
            "region": self.SHIP_FROM_REGION or None,
            "postcode": self.SHIP_FROM_POSTCODE,
            "country": self.SHIP_FROM_COUNTRY,
            "phone": self.SHIP_FROM_PHONE or None,
            "email": self.SHIP_FROM_EMAIL or None,
        }


@lru_cache()
def get_settings() -> Settings:
    """Build settings once per process."""
    return Settings()
