"""
Geocoding collaborator.

Turns free address text into coordinates and the place fields zone pricing
matches on (city, neighborhood). Address corrections go through it before
the route update path.

The HTTP provider speaks the Nominatim search API (`/search?format=jsonv2`),
which LocationIQ and self-hosted Nominatim also serve.
"""

import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel

from routedesk.app.core.config import settings
from routedesk.app.core.exceptions import ExternalServiceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class GeocodeResult(BaseModel):
    query: str
    formatted_address: str
    lat: float
    lng: float
    city: Optional[str] = None
    neighborhood: Optional[str] = None
    postal_code: Optional[str] = None


class GeocodingProvider(Protocol):
    async def resolve(self, address_text: str) -> GeocodeResult:
        """Resolve address text; raises NotFoundError when nothing matches."""
        ...


class HttpGeocodingProvider:
    """Geocoding over HTTP with httpx."""

    def __init__(
        self,
        base_url: str = None,
        api_key: Optional[str] = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.geocoding_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.geocoding_api_key
        self.timeout = timeout or settings.geocoding_timeout_seconds
        self._transport = transport

    async def resolve(self, address_text: str) -> GeocodeResult:
        if not address_text or not address_text.strip():
            raise ValidationError("Address text must not be empty")

        params = {"q": address_text, "format": "jsonv2", "addressdetails": 1, "limit": 1}
        if self.api_key:
            params["key"] = self.api_key

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"User-Agent": settings.app_name},
            ) as client:
                response = await client.get("/search", params=params)
                response.raise_for_status()
                results = response.json()
        except httpx.HTTPError as exc:
            logger.error("Geocoding request failed", extra={"error": str(exc)})
            raise ExternalServiceError("Geocoding", str(exc))

        if not results:
            raise NotFoundError("Address", address_text)

        best = results[0]
        address = best.get("address") or {}
        return GeocodeResult(
            query=address_text,
            formatted_address=best.get("display_name") or address_text,
            lat=float(best["lat"]),
            lng=float(best["lon"]),
            city=address.get("city") or address.get("town") or address.get("municipality"),
            neighborhood=address.get("suburb") or address.get("neighbourhood"),
            postal_code=address.get("postcode"),
        )
