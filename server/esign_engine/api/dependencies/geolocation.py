from collections.abc import AsyncIterator

from esign_engine.core.config import get_settings
from esign_engine.integrations.geolocation import HttpGeoResolver
from esign_engine.services.evidence_service import GeoResolver, no_geolocation


async def geo_resolver_dependency() -> AsyncIterator[GeoResolver]:
    settings = get_settings()
    if not settings.geolocation_url:
        yield no_geolocation
        return
    resolver = HttpGeoResolver(settings.geolocation_url, settings.geolocation_timeout_seconds)
    try:
        yield resolver
    finally:
        await resolver.close()
