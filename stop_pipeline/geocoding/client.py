"""
Geocoding provider clients.

Both supported providers (LocationIQ and Nominatim) answer a free-text
search with a JSON list of places in the same shape. A client returns the
best match as a GeocodeCandidate, or None when the provider found nothing.
HTTP failures are raised as geopy exceptions so callers handle every
provider the same way.

Rate limiting is applied by wrapping a client in RateLimitedGeocoder, which
is independent of how rows are batched.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests
from geopy.exc import (
    GeocoderAuthenticationFailure,
    GeocoderQuotaExceeded,
    GeocoderServiceError,
    GeocoderTimedOut,
)
from geopy.extra.rate_limiter import RateLimiter

from stop_pipeline.cache.models import GeocodeCandidate

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "delivery-stop-pipeline/0.1"
DEFAULT_TIMEOUT = 10
DEFAULT_MIN_DELAY_SECONDS = 1.1

LOCATIONIQ_API_URL = "https://us1.locationiq.com/v1/search.php"
NOMINATIM_API_URL = "https://nominatim.openstreetmap.org/search"


class GeocodingClient(ABC):
    """Free-text search against a geocoding provider."""

    name = "geocoder"

    @abstractmethod
    def search(self, query: str) -> Optional[GeocodeCandidate]:
        """Return the provider's best match for query, or None if not found.

        Raises:
            GeocoderServiceError: (or a subclass) when the provider fails
        """
        pass


class HttpGeocodingClient(GeocodingClient):
    """Shared request/response handling for JSON search APIs."""

    def __init__(
        self,
        api_url: str,
        country: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url
        self.country = country
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session or requests.Session()

    @abstractmethod
    def build_params(self, query: str) -> Dict[str, Any]:
        """Query-string parameters for a search request."""
        pass

    def search(self, query: str) -> Optional[GeocodeCandidate]:
        if not query or not query.strip():
            return None

        try:
            response = self.session.get(
                self.api_url,
                params=self.build_params(query),
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise GeocoderTimedOut(f"{self.name} timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise GeocoderServiceError(f"{self.name} request failed: {e}") from e

        status_code = response.status_code

        # LocationIQ answers "no results" with a 404
        if status_code == 404:
            logger.debug(f"{self.name} found nothing for '{query}'")
            return None
        if status_code in (401, 403):
            raise GeocoderAuthenticationFailure(f"{self.name} returned {status_code}")
        if status_code == 429:
            raise GeocoderQuotaExceeded(f"{self.name} returned {status_code}")
        if status_code >= 400:
            raise GeocoderServiceError(f"{self.name} returned {status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise GeocoderServiceError(f"{self.name} returned invalid JSON") from e

        if not data:
            return None
        if not isinstance(data, list):
            raise GeocoderServiceError(f"{self.name} returned an unexpected payload")

        return self.parse_place(data[0])

    def parse_place(self, place: Dict[str, Any]) -> GeocodeCandidate:
        """Convert one provider place into a GeocodeCandidate."""
        try:
            return GeocodeCandidate(
                lat=float(place["lat"]),
                lng=float(place["lon"]),
                display_name=place.get("display_name") or "",
                address=place.get("address") or {},
            )
        except (KeyError, TypeError, ValueError) as e:
            raise GeocoderServiceError(f"{self.name} returned a place without coordinates") from e


class LocationIQClient(HttpGeocodingClient):
    """LocationIQ search API (requires an API key, country by name)."""

    name = "locationiq"

    def __init__(
        self,
        api_key: str,
        api_url: str = LOCATIONIQ_API_URL,
        country: Optional[str] = "Brazil",
        **kwargs
    ):
        if not api_key:
            raise ValueError("LocationIQ requires an API key")
        super().__init__(api_url=api_url, country=country, **kwargs)
        self.api_key = api_key

    def build_params(self, query: str) -> Dict[str, Any]:
        params = {
            "key": self.api_key,
            "q": query,
            "format": "json",
            "addressdetails": 1,
            "limit": 1,
        }
        if self.country:
            params["country"] = self.country
        return params


class NominatimClient(HttpGeocodingClient):
    """OpenStreetMap Nominatim search API (no key, country code)."""

    name = "nominatim"

    def __init__(
        self,
        api_url: str = NOMINATIM_API_URL,
        country: Optional[str] = "br",
        **kwargs
    ):
        super().__init__(api_url=api_url, country=country, **kwargs)

    def build_params(self, query: str) -> Dict[str, Any]:
        params = {
            "q": query,
            "format": "json",
            "addressdetails": 1,
            "limit": 1,
        }
        if self.country:
            params["countrycodes"] = self.country
        return params


class RateLimitedGeocoder(GeocodingClient):
    """Wraps a client so consecutive searches respect a minimum delay.

    Provider errors are retried by the rate limiter and then re-raised.
    """

    def __init__(
        self,
        client: GeocodingClient,
        min_delay_seconds: float = DEFAULT_MIN_DELAY_SECONDS,
        max_retries: int = 2,
        error_wait_seconds: float = 5.0,
    ):
        self.client = client
        self.name = client.name
        self._search = RateLimiter(
            client.search,
            min_delay_seconds=min_delay_seconds,
            max_retries=max_retries,
            error_wait_seconds=error_wait_seconds,
            swallow_exceptions=False,
        )

    def search(self, query: str) -> Optional[GeocodeCandidate]:
        return self._search(query)


def create_geocoder(
    provider: str = "nominatim",
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    country: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
    min_delay_seconds: float = DEFAULT_MIN_DELAY_SECONDS,
    max_retries: int = 2,
    error_wait_seconds: float = 5.0,
) -> RateLimitedGeocoder:
    """Build a rate-limited client for the configured provider.

    Args:
        provider: "locationiq" or "nominatim"
        api_key: Provider API key (LocationIQ only)
        api_url: Override of the provider's search endpoint
        country: Country restriction; provider default when None

    Returns:
        RateLimitedGeocoder wrapping the provider client
    """
    options: Dict[str, Any] = {"timeout": timeout, "user_agent": user_agent}
    if api_url:
        options["api_url"] = api_url
    if country:
        options["country"] = country

    provider = (provider or "").lower()
    if provider == "locationiq":
        client = LocationIQClient(api_key=api_key, **options)
    elif provider == "nominatim":
        client = NominatimClient(**options)
    else:
        raise ValueError(f"Unknown geocoding provider: {provider}")

    logger.info(f"Geocoder initialized: {provider} with {min_delay_seconds}s rate limit")

    return RateLimitedGeocoder(
        client,
        min_delay_seconds=min_delay_seconds,
        max_retries=max_retries,
        error_wait_seconds=error_wait_seconds,
    )
