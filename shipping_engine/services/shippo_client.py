"""
Shippo REST API client.

Thin async HTTP wrapper: authentication, bounded timeouts, JSON in and out,
and classification of failures into CarrierError subclasses. No retries;
the fulfillment orchestrator and background jobs own retry policy.

Endpoints used:
- POST /addresses/          address validation (validate=true)
- POST /shipments/          create shipment, returns quoted rates
- POST /transactions/       purchase a label for a rate
- GET  /tracks/{carrier}/{tracking_number}
- POST /refunds/            void/refund a purchased label
"""
import logging
from typing import Any, Dict, Optional

import httpx

from shipping_engine.core.exceptions import (
    CarrierConfigurationError,
    CarrierUnavailableError,
    carrier_error_for_status,
)
from shipping_engine.core.utils import sanitize_for_logging

logger = logging.getLogger(__name__)

CARRIER_NAME = "shippo"


def _extract_error_message(payload: Any, default: str) -> str:
    """Shippo returns {"detail": ...} or {field: [messages]} on errors."""
    if isinstance(payload, dict):
        if payload.get("detail"):
            return str(payload["detail"])
        for key, value in payload.items():
            if isinstance(value, list) and value:
                return f"{key}: {value[0]}"
            if isinstance(value, str) and key not in ("raw",):
                return f"{key}: {value}"
    return default


class ShippoClient:
    """
    Shippo API client with token authentication.

    transport can be supplied to route requests through an
    httpx.MockTransport in tests.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.goshippo.com",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise CarrierConfigurationError(
                "Shippo API key not configured",
                carrier=CARRIER_NAME,
                operation="configure",
            )
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"ShippoToken {self._api_key}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _make_request(
        self,
        method: str,
        path: str,
        operation: str,
        data: Optional[Dict] = None,
    ) -> Dict:
        """Make an authenticated API request and return the decoded body."""
        client = await self._get_http_client()

        try:
            response = await client.request(method.upper(), path, json=data)
        except httpx.TimeoutException as e:
            logger.error(f"Shippo {operation} timed out after {self.timeout}s: {e}")
            raise CarrierUnavailableError(
                f"Carrier request timed out during {operation}",
                carrier=CARRIER_NAME,
                operation=operation,
                code="CARRIER_TIMEOUT",
            )
        except httpx.RequestError as e:
            logger.error(f"Shippo {operation} request failed: {e}")
            raise CarrierUnavailableError(
                f"Network error during {operation}: {e}",
                carrier=CARRIER_NAME,
                operation=operation,
                code="NETWORK_ERROR",
            )

        logger.debug(f"Shippo API {method.upper()} {path} -> {response.status_code}")

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"raw": response.text[:500]}

            error_msg = _extract_error_message(error_data, f"Shippo API error ({response.status_code})")
            error_cls = carrier_error_for_status(response.status_code)

            logger.error(
                f"Shippo API error during {operation}: {response.status_code} - "
                f"{sanitize_for_logging(error_msg)}"
            )
            raise error_cls(
                error_msg,
                carrier=CARRIER_NAME,
                operation=operation,
                status_code=response.status_code,
                details={"response": sanitize_for_logging(error_data, max_length=1000)},
            )

        try:
            return response.json()
        except ValueError:
            logger.error(f"Shippo {operation} returned a non-JSON body ({response.status_code})")
            raise CarrierUnavailableError(
                f"Malformed carrier response during {operation}",
                carrier=CARRIER_NAME,
                operation=operation,
                status_code=response.status_code,
            )

    # ==================== Addresses ====================

    async def create_address(self, address: Dict[str, Any], validate: bool = True) -> Dict:
        return await self._make_request(
            "POST", "/addresses/", "validate_address", {**address, "validate": validate}
        )

    # ==================== Shipments & Labels ====================

    async def create_shipment(
        self,
        address_from: Dict[str, Any],
        address_to: Dict[str, Any],
        parcels: list,
        metadata: Optional[str] = None,
    ) -> Dict:
        payload = {
            "address_from": address_from,
            "address_to": address_to,
            "parcels": parcels,
            "async": False,
        }
        if metadata:
            payload["metadata"] = metadata
        return await self._make_request("POST", "/shipments/", "create_shipment", payload)

    async def create_transaction(self, rate_id: str, label_file_type: str = "PDF") -> Dict:
        return await self._make_request(
            "POST",
            "/transactions/",
            "purchase_label",
            {"rate": rate_id, "label_file_type": label_file_type, "async": False},
        )

    # ==================== Tracking ====================

    async def get_tracking_status(self, carrier: str, tracking_number: str) -> Dict:
        return await self._make_request(
            "GET", f"/tracks/{carrier}/{tracking_number}", "get_tracking"
        )

    # ==================== Refunds ====================

    async def create_refund(self, transaction_id: str) -> Dict:
        return await self._make_request(
            "POST", "/refunds/", "cancel_shipment", {"transaction": transaction_id, "async": False}
        )
