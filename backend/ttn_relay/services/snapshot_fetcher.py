"""
Snapshot Fetcher
================

Asks the TTN Storage Integration for the most recently stored uplinks.

The dashboard calls this once when it opens, so the gauges show something
before the next live uplink arrives.

HOW TTN STORAGE WORKS:
---------------------
With the Storage Integration enabled on the application, TTN keeps recent
uplinks and serves them at:

    GET https://{region}.cloud.thethings.network/api/v3/as/applications/{app}/devices/{device}/packages/storage/uplink_message
    GET https://{region}.cloud.thethings.network/api/v3/as/applications/{app}/packages/storage/uplink_message

    Headers: Authorization: Bearer {api_key}
    Query:   limit=N, order=-received_at (newest first)

Each stored uplink comes back wrapped as {"result": {...}}. When there are
several, TTN streams one wrapper per line.

No caching and no retries: every call goes to TTN.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import httpx

from ttn_relay.exceptions import UpstreamError
from ttn_relay.services.device_registry import DeviceRegistry

logger = logging.getLogger(__name__)


class SnapshotFetcher:
    """
    Fetches stored uplinks from TTN.

    HOW TO USE:
    ----------
    fetcher = SnapshotFetcher(
        region="au1",
        application_id="reef-monitor@ttn",
        api_key="NNSXS.XXXX",
        registry=DeviceRegistry(buoy_device_id="reef-buoy-1"),
    )

    latest = await fetcher.fetch_latest("reef-buoy-1")      # dict or None
    everything = await fetcher.fetch_latest_for_configured_devices()
    """

    API_BASE_TEMPLATE = "https://{region}.cloud.thethings.network/api/v3/as/applications/{app_id}"
    DEVICE_STORAGE_PATH = "/devices/{device_id}/packages/storage/uplink_message"
    APPLICATION_STORAGE_PATH = "/packages/storage/uplink_message"
    NEWEST_FIRST = "-received_at"
    FALLBACK_LIMIT = 10

    def __init__(
        self,
        region: str,
        application_id: str,
        api_key: str,
        registry: DeviceRegistry,
        request_timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Set up the fetcher.

        Args:
            region: TTN cluster region (e.g. "au1")
            application_id: TTN application id; "@ttn" is stripped for REST calls
            api_key: API key sent as the bearer token
            registry: Which devices are configured
            request_timeout: How long to wait for TTN (seconds)
            http_client: Client to use instead of creating one
        """
        self.region = region
        self.application_id = application_id
        self.api_key = api_key
        self.registry = registry
        self.http_client = http_client or httpx.AsyncClient(timeout=request_timeout)

    @property
    def storage_app_id(self) -> str:
        """Application id as the REST API wants it (no "@ttn" suffix)."""
        return self.application_id.replace("@ttn", "")

    @property
    def api_base(self) -> str:
        return self.API_BASE_TEMPLATE.format(region=self.region, app_id=self.storage_app_id)

    def device_storage_url(self, device_id: str) -> str:
        return self.api_base + self.DEVICE_STORAGE_PATH.format(device_id=device_id)

    def application_storage_url(self) -> str:
        return self.api_base + self.APPLICATION_STORAGE_PATH

    # =========================================================================
    # UPSTREAM REQUESTS
    # =========================================================================

    async def _query_storage(self, url: str, limit: int) -> list[dict[str, Any]]:
        """
        GET one storage endpoint and unwrap every "result" in the response.

        Raises:
            UpstreamError: network failure or a non-2xx status
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        params = {"limit": str(limit), "order": self.NEWEST_FIRST}

        logger.info(f"[Storage] GET {url} (limit={limit})")
        try:
            response = await self.http_client.get(url, headers=headers, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_body = e.response.text[:500]
            logger.error(f"[Storage] TTN returned HTTP {e.response.status_code}: {error_body}")
            raise UpstreamError(
                f"TTN Storage API returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
                details=error_body or e.response.reason_phrase,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"[Storage] Request to TTN failed: {e}")
            raise UpstreamError("Could not reach the TTN Storage API", details=str(e)) from e

        return self.parse_results(response.text)

    @staticmethod
    def parse_results(body: str) -> list[dict[str, Any]]:
        """
        Unwrap a storage response body into a list of uplinks.

        Handles a single {"result": ...} object, newline-delimited wrappers,
        and "result" holding either one object or a list. An empty body is
        an empty list.

        Raises:
            UpstreamError: the body is not JSON
        """
        results: list[dict[str, Any]] = []
        body = (body or "").strip()
        if not body:
            return results

        try:
            documents = [json.loads(body)]
        except json.JSONDecodeError:
            try:
                documents = [json.loads(line) for line in body.splitlines() if line.strip()]
            except json.JSONDecodeError as e:
                raise UpstreamError("TTN Storage API sent a response that isn't JSON", details=str(e)) from e

        for document in documents:
            if not isinstance(document, dict):
                continue
            result = document.get("result")
            if isinstance(result, list):
                results.extend(item for item in result if isinstance(item, dict))
            elif isinstance(result, dict):
                results.append(result)
        return results

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def fetch_latest(self, device_id: str) -> Optional[dict[str, Any]]:
        """
        Most recent stored uplink for one device.

        Returns:
            The uplink exactly as TTN stored it, or None if there isn't one

        Raises:
            UpstreamError: TTN couldn't be queried
        """
        results = await self._query_storage(self.device_storage_url(device_id), limit=1)
        if not results:
            logger.info(f"[Storage] No stored messages for {device_id}")
            return None
        logger.info(f"[Storage] Found latest stored message for {device_id}")
        return results[0]

    async def fetch_recent(self, limit: int = FALLBACK_LIMIT) -> list[dict[str, Any]]:
        """
        Most recent stored uplinks for the whole application, newest first.

        Raises:
            UpstreamError: TTN couldn't be queried
        """
        results = await self._query_storage(self.application_storage_url(), limit=limit)
        logger.info(f"[Storage] Found {len(results)} messages from application query")
        return results[:limit]

    async def fetch_latest_for_configured_devices(self) -> list[dict[str, Any]]:
        """
        Latest stored uplink for every configured device.

        Devices are queried at the same time. Devices with nothing stored are
        left out. With no devices configured at all, falls back to the
        application's 10 most recent uplinks, unfiltered.

        Raises:
            UpstreamError: any of the queries failed
        """
        device_ids = self.registry.device_ids
        if not device_ids:
            logger.info("[Storage] No device IDs configured, fetching from application level")
            return await self.fetch_recent(self.FALLBACK_LIMIT)

        latest = await asyncio.gather(*(self.fetch_latest(device_id) for device_id in device_ids))
        messages = [message for message in latest if message is not None]
        logger.info(f"[Storage] Returning {len(messages)} of {len(device_ids)} configured devices")
        return messages

    async def close(self):
        """Close the HTTP client."""
        await self.http_client.aclose()
