"""
IP geolocation for signing sessions.

Lookups go to an ip-api.com compatible JSON endpoint. They are best effort:
a failed lookup is logged and the session opens without a location.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientTimeout

from esign_engine.schemas.evidence import GeoLocation

logger = logging.getLogger(__name__)


def parse_location(data: Dict[str, Any]) -> Optional[GeoLocation]:
    """Map an ip-api style body onto ``GeoLocation``; ``None`` when the service found nothing."""
    if not isinstance(data, dict) or data.get("status", "success") != "success":
        return None
    if data.get("lat") is None and not data.get("countryCode"):
        return None
    return GeoLocation(
        latitude=data.get("lat"),
        longitude=data.get("lon"),
        country=data.get("countryCode") or data.get("country"),
        region=data.get("regionName") or data.get("region"),
        city=data.get("city"),
        timezone=data.get("timezone"),
    )


class HttpGeoResolver:
    """Resolve a public IP address through an HTTP geolocation service."""

    def __init__(self, url_template: str, timeout_seconds: int = 3):
        """
        Args:
            url_template: Lookup URL with an ``{ip}`` placeholder
            timeout_seconds: Total time allowed for one lookup
        """
        self.url_template = url_template
        # Created lazily so private addresses never open a connection
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=timeout_seconds)

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers={"Accept": "application/json"})
        return self._session

    async def __call__(self, ip_address: str) -> Optional[GeoLocation]:
        url = self.url_template.format(ip=ip_address)
        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    logger.warning(f"Geolocation lookup for {ip_address} failed with HTTP {response.status}")
                    return None
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Geolocation lookup for {ip_address} failed: {e}")
            return None

        location = parse_location(data)
        if location is None:
            logger.info(f"No geolocation found for {ip_address}")
        return location

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
