"""
Geocoding provider clients.

- LocationIQClient: LocationIQ search API (API key required)
- NominatimClient: OpenStreetMap Nominatim search API
- RateLimitedGeocoder: minimum delay between consecutive searches
"""

from .client import (
    GeocodingClient,
    LocationIQClient,
    NominatimClient,
    RateLimitedGeocoder,
    create_geocoder,
)

__all__ = [
    "GeocodingClient",
    "LocationIQClient",
    "NominatimClient",
    "RateLimitedGeocoder",
    "create_geocoder",
]
