"""Remote SPB API client."""

import logging
from typing import Any, Optional

import httpx

from fieldsync.core.config import Settings, get_settings
from fieldsync.core.errors import NetworkError, ServerError
from fieldsync.schemas.forms import FormRecord, FormStatus, SpbItem

logger = logging.getLogger(__name__)


def _extract_items(body: Any) -> list[dict] | None:
    """Pull the list of entries out of the API's envelope variants."""
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        return data["items"]
    return None


class RemoteFormClient:
    """Async client for the SPB accept/adjust/list endpoints."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.api_base_url.rstrip('/')
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            headers = {"Content-Type": "application/json"}
            if self.settings.api_token:
                headers["Authorization"] = f"Bearer {self.settings.api_token}"
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
            )
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def endpoint_for(self, record: FormRecord) -> str:
        if record.status == FormStatus.ACCEPTED:
            return self.settings.accept_endpoint
        return self.settings.adjust_endpoint

    async def submit_form(self, record: FormRecord) -> None:
        """
        Submit a form to the accept or adjust endpoint.

        Raises:
            NetworkError: timeout or transport failure.
            ServerError: any non-200 response.
        """
        endpoint = self.endpoint_for(record)
        client = await self._get_client()
        try:
            response = await client.put(endpoint, json=record.to_api_request())
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timed out submitting {record.record_key}: {e}")
        except httpx.TransportError as e:
            raise NetworkError(f"Network error submitting {record.record_key}: {e}")

        if response.status_code != 200:
            logger.warning(
                f"Submit of {record.record_key} to {endpoint} returned HTTP "
                f"{response.status_code}: {response.text[:200]}"
            )
            raise ServerError(
                f"Server returned status {response.status_code}",
                status_code=response.status_code,
            )
        logger.info(f"Submitted form {record.record_key} to {endpoint}")

    async def check_already_processed(self, record_key: str) -> bool:
        """True when the server already holds a non-pending status for this SPB."""
        try:
            client = await self._get_client()
            response = await client.get(
                self.settings.spb_data_endpoint,
                params={"noSpb": record_key},
            )
            if response.status_code != 200:
                logger.warning(f"Failed to check SPB status for {record_key}: HTTP {response.status_code}")
                return False
            items = _extract_items(response.json())
            if not items:
                return False
            status = items[0].get("status")
            return str(status if status is not None else "0") != "0"
        except Exception as e:
            logger.warning(f"Error checking SPB status for {record_key}: {e}")
            return False

    async def get_spb_for_driver(self, driver: str, kd_vendor: str) -> list[SpbItem]:
        """
        Fetch the delivery notes for a driver/vendor scope.

        Raises:
            NetworkError: timeout or transport failure.
            ServerError: non-200 response or unparseable body.
        """
        client = await self._get_client()
        try:
            response = await client.get(
                self.settings.spb_data_endpoint,
                params={"driver": driver, "kdVendor": kd_vendor},
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}")

        if response.status_code != 200:
            raise ServerError(
                f"Failed to get SPB data. Status: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ServerError(f"Failed to parse SPB data: {e}", status_code=response.status_code)

        if isinstance(body, dict) and body.get("success") is False:
            raise ServerError(body.get("message") or "Failed to get SPB data", status_code=200)

        items = _extract_items(body)
        if items is None:
            raise ServerError("Failed to parse SPB data: no list in response", status_code=200)

        try:
            spbs = [SpbItem.model_validate(item) for item in items]
        except Exception as e:
            raise ServerError(f"Failed to parse SPB data: {e}", status_code=200)

        logger.info(f"Fetched {len(spbs)} SPB entries for driver {driver}")
        return spbs
