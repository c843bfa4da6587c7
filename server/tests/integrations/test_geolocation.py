"""
HTTP geolocation lookups used when a signing session opens.
"""

import asyncio
from unittest.mock import patch

import aiohttp
import pytest

from esign_engine.integrations.geolocation import HttpGeoResolver, parse_location

from .helpers import mock_response

IP_API_BODY = {
    "status": "success",
    "country": "United States",
    "countryCode": "US",
    "regionName": "Virginia",
    "city": "Ashburn",
    "lat": 39.03,
    "lon": -77.5,
    "timezone": "America/New_York",
}


@pytest.fixture
def resolver():
    return HttpGeoResolver("http://geo.test/json/{ip}", timeout_seconds=2)


class TestParseLocation:
    def test_maps_ip_api_fields(self):
        location = parse_location(IP_API_BODY)

        assert location.country == "US"
        assert location.region == "Virginia"
        assert location.city == "Ashburn"
        assert (location.latitude, location.longitude) == (39.03, -77.5)
        assert location.timezone == "America/New_York"

    def test_failed_lookup_yields_nothing(self):
        assert parse_location({"status": "fail", "message": "reserved range"}) is None

    def test_empty_body_yields_nothing(self):
        assert parse_location({}) is None


class TestHttpGeoResolver:
    @pytest.mark.asyncio
    async def test_lookup_formats_url_with_address(self, resolver):
        with patch("aiohttp.ClientSession.get") as mock_get:
            mock_get.return_value = mock_response(200, IP_API_BODY)

            location = await resolver("8.8.8.8")

        assert location.city == "Ashburn"
        assert mock_get.call_args.args[0] == "http://geo.test/json/8.8.8.8"
        await resolver.close()

    @pytest.mark.asyncio
    async def test_server_error_yields_nothing(self, resolver):
        with patch("aiohttp.ClientSession.get") as mock_get:
            mock_get.return_value = mock_response(500)

            assert await resolver("8.8.8.8") is None
        await resolver.close()

    @pytest.mark.asyncio
    async def test_unknown_address_yields_nothing(self, resolver):
        with patch("aiohttp.ClientSession.get") as mock_get:
            mock_get.return_value = mock_response(200, {"status": "fail", "message": "invalid query"})

            assert await resolver("8.8.8.8") is None
        await resolver.close()

    @pytest.mark.asyncio
    async def test_connection_error_yields_nothing(self, resolver):
        with patch("aiohttp.ClientSession.get", side_effect=aiohttp.ClientConnectionError("refused")):
            assert await resolver("8.8.8.8") is None
        await resolver.close()

    @pytest.mark.asyncio
    async def test_timeout_yields_nothing(self, resolver):
        with patch("aiohttp.ClientSession.get", side_effect=asyncio.TimeoutError()):
            assert await resolver("8.8.8.8") is None
        await resolver.close()
