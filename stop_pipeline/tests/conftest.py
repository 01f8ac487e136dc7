"""
Shared fixtures for stop pipeline tests.
"""

import pytest

from stop_pipeline.cache.learned_locations import InMemoryLearnedLocationStore, LearnedLocationCache
from stop_pipeline.cache.models import GeocodeCandidate, OrderRow
from stop_pipeline.geocoding.client import GeocodingClient


class FakeGeocoder(GeocodingClient):
    """Geocoder returning canned candidates and recording every query."""

    name = "fake"

    def __init__(self, default=None):
        self.default = default
        self.responses = {}
        self.calls = []

    def search(self, query):
        self.calls.append(query)
        response = self.responses.get(query, self.default)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_geocoder():
    """Geocoder that finds nothing unless told otherwise."""
    return FakeGeocoder()


@pytest.fixture
def learned_cache():
    """Learned-location cache backed by memory."""
    return LearnedLocationCache(InMemoryLearnedLocationStore())


@pytest.fixture
def sao_paulo_candidate():
    """Provider match a few metres from the sample row's coordinates."""
    return GeocodeCandidate(
        lat=-23.5506,
        lng=-46.633308,
        display_name="123, Rua Exemplo, Centro, São Paulo, Região Imediata de São Paulo, 01310-100, Brasil",
        address={
            "house_number": "123",
            "road": "Rua Exemplo",
            "suburb": "Centro",
            "city": "São Paulo",
            "state": "São Paulo",
            "country": "Brasil",
        },
    )


@pytest.fixture
def make_row():
    """Factory for order rows in São Paulo/Centro."""
    def _make_row(address="Rua Exemplo, 123", **kwargs):
        values = {
            "neighborhood": "Centro",
            "city": "São Paulo",
            "state": "SP",
            "sequences": "A1",
            "row_number": 1,
        }
        values.update(kwargs)
        return OrderRow(address=address, **values)
    return _make_row
