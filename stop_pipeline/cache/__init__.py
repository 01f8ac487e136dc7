"""
Data models and the learned-location cache.
"""

from .learned_locations import (
    InMemoryLearnedLocationStore,
    JsonFileLearnedLocationStore,
    LearnedLocationCache,
    LearnedLocationRepository,
    SqliteLearnedLocationStore,
    create_learned_location_store,
)
from .models import (
    AddressStatus,
    GeocodeCandidate,
    LearnedLocationEntry,
    OrderRow,
    ReconciledAddress,
    Stop,
)

__all__ = [
    "AddressStatus",
    "GeocodeCandidate",
    "InMemoryLearnedLocationStore",
    "JsonFileLearnedLocationStore",
    "LearnedLocationCache",
    "LearnedLocationEntry",
    "LearnedLocationRepository",
    "OrderRow",
    "ReconciledAddress",
    "SqliteLearnedLocationStore",
    "Stop",
    "create_learned_location_store",
]
