"""Async client for the Shiprocket courier aggregator API.

Every call is bounded by ``COURIER_TIMEOUT_SECONDS`` and never retried here;
callers decide whether a failure is fatal.
"""

from typing import List, Optional

import httpx
import structlog

from order_pipeline import config
from order_pipeline.errors import CourierError

logger = structlog.get_logger(__name__)


class CourierClient:
    def __init__(
        self,
        email: str = None,
        password: str = None,
        base_url: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.email = config.SHIPROCKET_EMAIL if email is None else email
        self.password = config.SHIPROCKET_PASSWORD if password is None else password
        self.token: Optional[str] = None
        self._http = httpx.AsyncClient(
            base_url=base_url or config.SHIPROCKET_BASE_URL,
            timeout=timeout or config.COURIER_TIMEOUT_SECONDS,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self._http.aclose()

    @property
    def configured(self) -> bool:
        return bool(self.email and self.password)

    async def _request(self, method: str, path: str, json=None, params=None, auth: bool = True):
        headers = {}
        if auth:
            if not self.token:
                raise CourierError("Not authenticated with courier aggregator")
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await self._http.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise CourierError(f"Courier request {method} {path} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise CourierError(
                f"Courier returned a non-JSON response ({response.status_code}) for {path}",
                payload=response.text,
            )

        if response.status_code >= 500:
            raise CourierError(f"Courier error {response.status_code} for {path}", payload=data)
        # 4xx bodies carry the aggregator's explanation; callers interpret them
        return data

    async def authenticate(self) -> str:
        data = await self._request(
            "POST", "/auth/login", json={"email": self.email, "password": self.password}, auth=False
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise CourierError("Shiprocket authentication failed", payload=data)
        self.token = token
        return token

    async def register_pickup_location(self, payload: dict) -> dict:
        return await self._request("POST", "/settings/company/addpickup", json=payload)

    async def create_shipment(self, payload: dict) -> dict:
        return await self._request("POST", "/orders/create/adhoc", json=payload)

    async def assign_awb(self, shipment_id, courier_id: Optional[int] = None) -> dict:
        payload = {"shipment_id": shipment_id}
        if courier_id:
            payload["courier_id"] = courier_id
        return await self._request("POST", "/courier/assign/awb", json=payload)

    async def schedule_pickup(self, shipment_id) -> dict:
        return await self._request("POST", "/courier/generate/pickup", json={"shipment_id": [shipment_id]})

    async def generate_manifest(self, shipment_id) -> dict:
        return await self._request("POST", "/manifests/generate", json={"shipment_id": [shipment_id]})

    async def generate_label(self, shipment_id) -> dict:
        return await self._request("POST", "/courier/generate/label", json={"shipment_id": [shipment_id]})

    async def track_awb(self, awb: str) -> dict:
        return await self._request("GET", f"/courier/track/awb/{awb}")

    async def search_orders(self, query: str) -> List[dict]:
        data = await self._request("GET", "/orders", params={"search": query})
        found = data.get("data") if isinstance(data, dict) else None
        return found if isinstance(found, list) else []

    async def fetch_order(self, shipment_id) -> dict:
        data = await self._request("GET", f"/orders/show/{shipment_id}")
        detail = data.get("data") if isinstance(data, dict) else None
        return detail if isinstance(detail, dict) else {}
