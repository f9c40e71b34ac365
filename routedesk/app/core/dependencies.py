"""
Shared FastAPI dependencies.

Collaborators are provided through dependencies so tests can override them
with `app.dependency_overrides`.
"""

from routedesk.app.services.geocoding import GeocodingProvider, HttpGeocodingProvider


def get_geocoder() -> GeocodingProvider:
    """
    Geocoding collaborator used by address corrections.

    Configured from settings (geocoding_base_url, geocoding_api_key).
    """
    return HttpGeocodingProvider()
