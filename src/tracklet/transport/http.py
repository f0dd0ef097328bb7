"""
Delivery of envelopes to the collection endpoint.

POST {host}/api/s/{method} (or /api/s/s2s/{method} server-to-server). A
delivery failure never reaches the caller: it is logged and the call resolves
to None.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Optional

import httpx

from tracklet.config import TrackerOptions
from tracklet.errors import TransportError
from tracklet.version import LIBRARY_NAME, VERSION

if TYPE_CHECKING:
    from tracklet.destinations.dispatch import DestinationDispatcher

logger = logging.getLogger(__name__)


def default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(headers={"User-Agent": f"{LIBRARY_NAME}/{VERSION}"})


class Transport:
    def __init__(self, dispatcher: "DestinationDispatcher", http_client: Optional[httpx.AsyncClient] = None):
        self._dispatcher = dispatcher
        self._client = http_client or default_http_client()
        self._owns_client = http_client is None

    @staticmethod
    def endpoint(host: str, method: str, s2s: bool) -> str:
        base = host.rstrip("/")
        return f"{base}/api/s/s2s/{method}" if s2s else f"{base}/api/s/{method}"

    @staticmethod
    def _headers(options: TrackerOptions) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if options.write_key:
            headers["X-Write-Key"] = options.write_key
        if options.debug:
            headers["X-Enable-Debug"] = "true"
        if options.privacy.ip_policy != "keep":
            headers["X-IP-Policy"] = options.privacy.ip_policy
        return headers

    async def send(
        self,
        method: str,
        envelope: dict[str, Any],
        options: TrackerOptions,
        *,
        s2s: bool,
        instance: Any = None,
    ) -> Optional[dict[str, Any]]:
        """Deliver envelope, then hand any returned destinations to the dispatcher."""
        if options.echo_events:
            logger.info("[echo] sending '%s' event: %s", method, json.dumps(envelope, indent=2, default=str))
            return envelope

        url = self.endpoint(options.host or "", method, s2s)
        try:
            response = await self._post(url, envelope, options)
        except TransportError as e:
            if options.debug:
                logger.warning("Delivery of %s event %s failed: %s", method, envelope.get("messageId"), e)
            else:
                logger.debug("Delivery of %s event %s failed: %s", method, envelope.get("messageId"), e)
            return None

        destinations = response.get("destinations") if isinstance(response, dict) else None
        if destinations is not None and not isinstance(destinations, list):
            logger.warning("%s responded with malformed destinations %r, ignored", method, destinations)
            destinations = None
        if destinations:
            if s2s:
                logger.warning(
                    "%s responded with %d destinations, ignored in server-to-server mode",
                    method, len(destinations),
                )
            else:
                if options.debug:
                    logger.debug("Processing device destinations: %s", json.dumps(destinations, indent=2))
                await self._dispatcher.dispatch(destinations, method, envelope, instance, debug=options.debug)
        return envelope

    async def _post(self, url: str, envelope: dict[str, Any], options: TrackerOptions) -> Any:
        try:
            resp = await self._client.post(url, json=envelope, headers=self._headers(options),
                                           timeout=options.timeout_s)
        except httpx.TimeoutException:
            raise TransportError(f"Calling {url} timed out after {options.timeout_s}s", code="timeout")
        except httpx.HTTPError as e:
            raise TransportError(f"Calling {url} failed: {e}")

        if options.debug:
            logger.debug("%s replied %s: %s. Original payload:\n%s",
                         url, resp.status_code, resp.text, json.dumps(envelope, indent=2, default=str))
        if not resp.is_success:
            raise TransportError(f"{url} replied {resp.status_code}: {resp.text[:200]}", code="http_error",
                                 details={"status": resp.status_code})
        try:
            return resp.json()
        except ValueError:
            raise TransportError(f"Can't parse JSON from {url}: {resp.text[:200]}", code="invalid_response")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
