"""
Shippo Carrier Implementation

Carrier aggregator adapter:
- Implements BaseCarrier on top of ShippoClient
- Converts Shippo JSON into CarrierRate / LabelPurchase / TrackingSnapshot
- Registered via @register_carrier decorator

Shippo quotes money as decimal strings in major units; everything leaving
this module is integer minor units.
"""
import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from shipping_engine.core.config import Settings
from shipping_engine.core.exceptions import (
    CarrierRequestError,
    CarrierUnavailableError,
    NoShippingRateError,
    ShippingValidationError,
)
from shipping_engine.models.address import ShippingAddress
from shipping_engine.modules.shipping.carriers import register_carrier
from shipping_engine.modules.shipping.carriers.base import (
    AddressValidationResult,
    BaseCarrier,
    CarrierCode,
    CarrierRate,
    LabelPurchase,
    Parcel,
    TrackingEvent,
    TrackingSnapshot,
    TrackingStatus,
)
from shipping_engine.services.shippo_client import ShippoClient

logger = logging.getLogger(__name__)

# Shippo tracking status -> TrackingStatus
SHIPPO_STATUS_MAP = {
    "UNKNOWN": TrackingStatus.PENDING,
    "PRE_TRANSIT": TrackingStatus.PROCESSING,
    "TRANSIT": TrackingStatus.IN_TRANSIT,
    "DELIVERED": TrackingStatus.DELIVERED,
    "RETURNED": TrackingStatus.RETURNED,
    "FAILURE": TrackingStatus.FAILED,
    "EXCEPTION": TrackingStatus.EXCEPTION,
}

# Public tracking pages, used when Shippo omits tracking_url_provider
TRACKING_URLS = {
    "royal-mail": "https://www.royalmail.com/track-your-item#/tracking-results/",
    "dpd": "https://www.dpd.co.uk/apps/tracking/?reference=",
    "ups": "https://www.ups.com/track?loc=en_GB&tracknum=",
    "fedex": "https://www.fedex.com/fedextrack/?trknbr=",
    "hermes": "https://www.evri.com/track/parcel/",
    "evri": "https://www.evri.com/track/parcel/",
}

SUPPORTED_CARRIERS = {
    "usps": "USPS",
    "ups": "UPS",
    "fedex": "FedEx",
    "dhl_express": "DHL Express",
    "royal_mail": "Royal Mail",
    "dpd": "DPD",
    "hermes": "Hermes",
    "parcelforce": "Parcelforce",
}

LABEL_REFUND_ACCEPTED = {"QUEUED", "PENDING", "SUCCESS"}


def _carrier_key(carrier: Optional[str]) -> str:
    return (carrier or "").strip().lower().replace(" ", "-").replace("_", "-")


def _carrier_token(carrier: str) -> str:
    """Shippo carrier token as used in /tracks/ paths (royal_mail, dhl_express)."""
    return carrier.strip().lower().replace(" ", "_").replace("-", "_")


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit decimal string ("4.99") to minor units (499)."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise CarrierRequestError(
            f"Unparseable amount from carrier: {amount!r}",
            carrier="shippo",
            operation="parse_rate",
        )
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable carrier timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_location(location: Any) -> Optional[str]:
    if not location:
        return None
    if isinstance(location, str):
        return location
    parts = [location.get("city"), location.get("state"), location.get("zip"), location.get("country")]
    text = ", ".join(p for p in parts if p)
    return text or None


def _messages_text(messages: Any) -> List[str]:
    """Shippo messages are strings or {"text": ..., "code": ...} objects."""
    texts = []
    for message in messages or []:
        if isinstance(message, dict):
            text = message.get("text") or message.get("code")
            if text:
                texts.append(str(text))
        elif message:
            texts.append(str(message))
    return texts


def to_shippo_address(address: ShippingAddress) -> Dict[str, Any]:
    return {
        "name": address.name or "",
        "company": address.company or "",
        "street1": address.line1 or "",
        "street2": address.line2 or "",
        "city": address.city or "",
        "state": address.region or "",
        "zip": address.postcode or "",
        "country": address.country_code,
        "phone": address.phone or "",
        "email": address.email or "",
    }


def from_shippo_address(data: Dict[str, Any]) -> ShippingAddress:
    return ShippingAddress(
        name=data.get("name") or None,
        company=data.get("company") or None,
        line1=data.get("street1") or None,
        line2=data.get("street2") or None,
        city=data.get("city") or None,
        region=data.get("state") or None,
        postcode=data.get("zip") or "",
        country=data.get("country") or "",
        phone=data.get("phone") or None,
        email=data.get("email") or None,
    )


def to_shippo_parcel(parcel: Parcel) -> Dict[str, Any]:
    return {
        "length": f"{parcel.length:.2f}",
        "width": f"{parcel.width:.2f}",
        "height": f"{parcel.height:.2f}",
        "distance_unit": parcel.distance_unit,
        "weight": f"{parcel.weight:.3f}",
        "mass_unit": parcel.mass_unit,
    }


@register_carrier(CarrierCode.SHIPPO)
class ShippoCarrier(BaseCarrier):
    """
    Shippo carrier aggregator gateway.

    One Shippo account fronts many physical carriers (Royal Mail, DPD,
    UPS...). The physical carrier is selected per shipment from the
    shipping method's carrier and service code.
    """

    STATUS_MAP = SHIPPO_STATUS_MAP

    def __init__(self, settings: Settings, client: Optional[ShippoClient] = None):
        super().__init__(settings)
        self._client = client or ShippoClient(
            api_key=settings.SHIPPO_API_KEY,
            base_url=settings.SHIPPO_API_BASE,
            timeout=settings.CARRIER_TIMEOUT_SECONDS,
        )

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.SHIPPO

    @property
    def carrier_name(self) -> str:
        return "Shippo"

    @property
    def is_test_mode(self) -> bool:
        return self.settings.is_carrier_test_mode

    def get_carriers(self) -> Dict[str, str]:
        return dict(SUPPORTED_CARRIERS)

    async def close(self) -> None:
        await self._client.close()

    # ==================== Address Validation ====================

    async def validate_address(self, address: ShippingAddress) -> AddressValidationResult:
        data = await self._client.create_address(to_shippo_address(address), validate=True)
        results = data.get("validation_results") or {}
        messages = _messages_text(results.get("messages"))

        if results.get("is_valid"):
            return AddressValidationResult(
                is_valid=True,
                original=address,
                normalized=address.apply_validation(from_shippo_address(data), messages),
                messages=messages,
                external_id=data.get("object_id"),
            )

        logger.info(f"Shippo rejected address in {address.country_code}: {len(messages)} message(s)")
        return AddressValidationResult(
            is_valid=False,
            original=address,
            messages=messages or ["Address validation failed"],
            external_id=data.get("object_id"),
        )

    # ==================== Rates ====================

    def _parse_rate(self, raw: Dict[str, Any]) -> CarrierRate:
        servicelevel = raw.get("servicelevel") or {}
        return CarrierRate(
            rate_id=raw["object_id"],
            carrier=raw.get("provider") or "",
            service_name=servicelevel.get("name") or "",
            service_token=servicelevel.get("token"),
            amount=to_minor_units(raw.get("amount", "0")),
            currency=raw.get("currency") or self.settings.CURRENCY,
            estimated_days=raw.get("estimated_days"),
            duration_terms=raw.get("duration_terms"),
            carrier_account=raw.get("carrier_account"),
        )

    async def _create_shipment(
        self,
        address_from: ShippingAddress,
        address_to: ShippingAddress,
        parcels: List[Parcel],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        meta_text = None
        if metadata:
            meta_text = " ".join(f"{k}={v}" for k, v in metadata.items())[:100]

        data = await self._client.create_shipment(
            address_from=to_shippo_address(address_from),
            address_to=to_shippo_address(address_to),
            parcels=[to_shippo_parcel(p) for p in parcels],
            metadata=meta_text,
        )

        status = data.get("status")
        if status != "SUCCESS":
            messages = _messages_text(data.get("messages"))
            error_cls = CarrierRequestError if status == "ERROR" else CarrierUnavailableError
            raise error_cls(
                f"Carrier did not quote shipment (status={status}): {'; '.join(messages) or 'no details'}",
                carrier="shippo",
                operation="create_shipment",
                details={"messages": messages},
            )
        return data

    async def get_rates(
        self,
        address_from: ShippingAddress,
        address_to: ShippingAddress,
        parcels: List[Parcel],
    ) -> List[CarrierRate]:
        data = await self._create_shipment(address_from, address_to, parcels)
        rates = [self._parse_rate(r) for r in data.get("rates") or [] if r.get("available", True)]
        logger.debug(f"Shippo quoted {len(rates)} rate(s) to {address_to.country_code}")
        return rates

    @staticmethod
    def select_rate(
        rates: List[CarrierRate],
        carrier: Optional[str] = None,
        service_code: Optional[str] = None,
        allow_fallback: bool = True,
    ) -> Optional[CarrierRate]:
        """
        Pick the rate to purchase.

        With carrier and service: provider must equal the carrier
        (case-insensitive) and the service level name must contain the
        service code, or its token equal it. Without both, or when the
        exact match fails and allow_fallback is set, the first rate wins.
        """
        if not rates:
            return None
        if carrier and service_code:
            wanted_carrier = _carrier_key(carrier)
            wanted_service = service_code.strip().lower()
            for rate in rates:
                if _carrier_key(rate.carrier) != wanted_carrier:
                    continue
                if wanted_service in rate.service_name.lower() or (rate.service_token or "").lower() == wanted_service:
                    return rate
            return rates[0] if allow_fallback else None
        return rates[0]

    # ==================== Shipments & Labels ====================

    async def create_shipment(
        self,
        address_from: ShippingAddress,
        address_to: ShippingAddress,
        parcels: List[Parcel],
        carrier: Optional[str] = None,
        service_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        allow_fallback: bool = True,
    ) -> LabelPurchase:
        shipment = await self._create_shipment(address_from, address_to, parcels, metadata)
        rates = [self._parse_rate(r) for r in shipment.get("rates") or [] if r.get("available", True)]

        selected = self.select_rate(rates, carrier, service_code, allow_fallback)
        if selected is None:
            logger.error(
                f"No suitable Shippo rate for carrier={carrier} service={service_code} "
                f"({len(rates)} quoted)"
            )
            raise NoShippingRateError(
                "No suitable shipping rate found",
                details={
                    "carrier": carrier,
                    "service_code": service_code,
                    "quoted": [r.to_dict() for r in rates],
                },
            )

        transaction = await self._client.create_transaction(
            selected.rate_id, label_file_type=self.settings.CARRIER_LABEL_FILE_TYPE
        )
        status = transaction.get("status")
        if status != "SUCCESS":
            messages = _messages_text(transaction.get("messages"))
            error_cls = CarrierRequestError if status == "ERROR" else CarrierUnavailableError
            raise error_cls(
                f"Failed to purchase label (status={status}): {'; '.join(messages) or 'no details'}",
                carrier="shippo",
                operation="purchase_label",
                details={"messages": messages, "rate_id": selected.rate_id},
            )

        tracking_number = transaction.get("tracking_number") or None
        tracking_url = transaction.get("tracking_url_provider") or None
        if not tracking_url and tracking_number:
            tracking_url = self.get_tracking_url(selected.carrier, tracking_number)

        logger.info(
            f"Shippo label purchased: transaction={transaction.get('object_id')} "
            f"carrier={selected.carrier} service={selected.service_name} amount={selected.amount}"
        )
        return LabelPurchase(
            shipment_id=shipment.get("object_id") or "",
            transaction_id=transaction.get("object_id") or "",
            tracking_number=tracking_number,
            tracking_url=tracking_url,
            label_url=transaction.get("label_url") or None,
            rate=selected,
            eta=_parse_datetime(transaction.get("eta")),
            metadata=dict(metadata or {}),
            raw={
                "shipment_id": shipment.get("object_id"),
                "transaction_id": transaction.get("object_id"),
                "rate": selected.to_dict(),
                "label_file_type": self.settings.CARRIER_LABEL_FILE_TYPE,
                "test": self.is_test_mode,
            },
        )

    # ==================== Tracking ====================

    def _parse_tracking(self, data: Dict[str, Any], tracking_number: str, carrier: Optional[str]) -> TrackingSnapshot:
        current = data.get("tracking_status") or {}
        if isinstance(current, str):
            current = {"status": current}

        carrier_status = str(current.get("status") or "UNKNOWN").upper()
        status = self.map_status(carrier_status)
        if status == TrackingStatus.UNKNOWN:
            logger.warning(f"Unmapped Shippo tracking status {carrier_status!r} for {tracking_number}")

        history = []
        for event in data.get("tracking_history") or []:
            event_status = str(event.get("status") or "UNKNOWN").upper()
            history.append(TrackingEvent(
                status=self.map_status(event_status),
                carrier_status=event_status,
                description=event.get("status_details") or None,
                location=_format_location(event.get("location")),
                occurred_at=_parse_datetime(event.get("status_date")),
            ))

        delivered_at = None
        if status == TrackingStatus.DELIVERED:
            delivered_at = _parse_datetime(current.get("status_date")) or datetime.now(timezone.utc)

        return TrackingSnapshot(
            tracking_number=data.get("tracking_number") or tracking_number,
            carrier=data.get("carrier") or carrier or "",
            status=status,
            carrier_status=carrier_status,
            status_details=current.get("status_details") or None,
            history=history,
            eta=_parse_datetime(data.get("eta")),
            delivered_at=delivered_at,
        )

    async def get_tracking_info(self, tracking_number: str, carrier: Optional[str] = None) -> TrackingSnapshot:
        carrier = _carrier_token(carrier or self.settings.DEFAULT_TRACKING_CARRIER)
        data = await self._client.get_tracking_status(carrier, tracking_number)
        return self._parse_tracking(data, tracking_number, carrier)

    def parse_tracking_webhook(self, payload: Dict[str, Any]) -> TrackingSnapshot:
        """Accepts the track_updated envelope or a bare track object."""
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        tracking_number = data.get("tracking_number")
        if not tracking_number:
            raise ShippingValidationError("Tracking webhook has no tracking_number", field="tracking_number")
        return self._parse_tracking(data, tracking_number, data.get("carrier"))

    def verify_webhook_token(self, token: Optional[str]) -> bool:
        expected = self.settings.SHIPPO_WEBHOOK_TOKEN
        if not expected:
            logger.warning("Tracking webhook received but SHIPPO_WEBHOOK_TOKEN is not configured")
            return False
        if not token:
            return False
        return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))

    def get_tracking_url(self, carrier: Optional[str], tracking_number: str) -> Optional[str]:
        base = TRACKING_URLS.get(_carrier_key(carrier))
        return f"{base}{tracking_number}" if base else None

    # ==================== Cancellation ====================

    async def cancel_shipment(self, external_id: str) -> bool:
        """
        Refund a purchased label.

        A rejected refund (label already scanned, window closed) is False,
        not an error. Transport failures still raise.
        """
        try:
            data = await self._client.create_refund(external_id)
        except CarrierRequestError as e:
            logger.warning(f"Shippo refused label refund for {external_id}: {e.message}")
            return False

        status = str(data.get("status") or "").upper()
        if status in LABEL_REFUND_ACCEPTED:
            logger.info(f"Shippo label refund requested for {external_id}: {status}")
            return True

        logger.warning(f"Shippo label refund for {external_id} returned status {status or 'unknown'}")
        return False
