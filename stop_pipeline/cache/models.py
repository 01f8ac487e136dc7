"""
Pydantic models for order rows, reconciliation results, stops and learned locations.
"""

import math
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from stop_pipeline.core.address_normalizer import (
    build_learning_key,
    extract_complement,
    normalize_complement,
)
from stop_pipeline.core.coordinates import is_valid_coordinate, normalize_coordinate

SEQUENCE_SEPARATOR = ";"


class AddressStatus(str, Enum):
    """Reconciliation status of a row or stop."""
    VALID = "valid"
    CORRECTED = "corrected"
    PENDING = "pending"
    MISMATCH = "mismatch"


def _clean_optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    return text or None


def split_sequences(value: Any) -> List[str]:
    """Turn "A1; A2;A3" or a list of identifiers into a clean list."""
    if value is None:
        return []
    if isinstance(value, float):
        if math.isnan(value):
            return []
        if value.is_integer():
            value = int(value)
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value if item is not None]
    else:
        items = str(value).split(SEQUENCE_SEPARATOR)
    return [item.strip() for item in items if item.strip()]


class OrderRow(BaseModel):
    """One spreadsheet row, with already-mapped field names."""

    address: str
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    latitude: Optional[Union[float, str]] = None
    longitude: Optional[Union[float, str]] = None
    sequences: List[str] = Field(default_factory=list)
    row_number: Optional[int] = None

    # Passthrough columns preserved for export, never interpreted
    extra: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        """Pydantic config."""
        frozen = True

    @field_validator("address", mode="before")
    @classmethod
    def _clean_address(cls, value: Any) -> str:
        return _clean_optional_text(value) or ""

    @field_validator("neighborhood", "city", "state", mode="before")
    @classmethod
    def _clean_admin_fields(cls, value: Any) -> Optional[str]:
        return _clean_optional_text(value)

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _clean_coordinate_text(cls, value: Any) -> Any:
        if isinstance(value, float) and math.isnan(value):
            return None
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("sequences", mode="before")
    @classmethod
    def _split_sequences(cls, value: Any) -> List[str]:
        return split_sequences(value)

    @property
    def source_coordinates(self) -> Optional[tuple]:
        """Spreadsheet coordinates if both parse and are in range."""
        lat = normalize_coordinate(self.latitude)
        lng = normalize_coordinate(self.longitude)
        if is_valid_coordinate(lat, lng):
            return lat, lng
        return None

    @property
    def complement(self) -> str:
        return extract_complement(self.address)

    @property
    def learning_key(self) -> str:
        return build_learning_key(self.address, self.neighborhood, self.city, self.state)


class GeocodeCandidate(BaseModel):
    """Best match returned by a geocoding provider."""

    lat: float
    lng: float
    display_name: str = ""
    address: Dict[str, Any] = Field(default_factory=dict)


class ReconciledAddress(BaseModel):
    """One order row after geocoding arbitration."""

    row: OrderRow
    original_address: str
    corrected_address: str
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    status: AddressStatus
    note: str = ""
    search_used: str = ""
    learned: bool = False
    complement: str = ""
    normalized_complement: str = ""

    class Config:
        """Pydantic config."""
        use_enum_values = True

    @model_validator(mode="after")
    def _trusted_status_has_coordinates(self) -> "ReconciledAddress":
        if self.status in (AddressStatus.VALID, AddressStatus.CORRECTED):
            lat = normalize_coordinate(self.latitude)
            lng = normalize_coordinate(self.longitude)
            if not is_valid_coordinate(lat, lng):
                raise ValueError(
                    f"Status '{self.status}' requires a valid coordinate pair, "
                    f"got ({self.latitude}, {self.longitude})"
                )
        return self

    @property
    def coordinates(self) -> Optional[tuple]:
        lat = normalize_coordinate(self.latitude)
        lng = normalize_coordinate(self.longitude)
        if is_valid_coordinate(lat, lng):
            return lat, lng
        return None


class Stop(BaseModel):
    """One deduplicated delivery location."""

    signature: str
    corrected_address: str
    complement: str = ""
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    status: AddressStatus
    sequences: List[str] = Field(default_factory=list)
    learned: bool = False
    learning_key: str = ""
    original_address: str = ""
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    note: str = ""
    row_count: int = 1
    extra: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        """Pydantic config."""
        use_enum_values = True

    def to_record(self) -> Dict[str, Any]:
        """Flatten into a record of plain values for export."""
        record: Dict[str, Any] = {}
        for key, value in self.extra.items():
            if value is None or isinstance(value, (str, int, float, bool)):
                record[key] = value
            else:
                record[key] = str(value)

        record.update({
            "corrected_address": self.corrected_address,
            "complement": self.complement,
            "latitude": self.latitude or "",
            "longitude": self.longitude or "",
            "status": self.status.value if isinstance(self.status, AddressStatus) else self.status,
            "sequence": SEQUENCE_SEPARATOR.join(self.sequences),
            "package_count": len(self.sequences),
            "learned": self.learned,
            "note": self.note,
            "neighborhood": self.neighborhood or "",
            "city": self.city or "",
            "state": self.state or "",
        })
        return record


class LearnedLocationEntry(BaseModel):
    """A human-confirmed coordinate for a learning key."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    updated_at: int = Field(default_factory=lambda: int(time.time() * 1000), alias="updatedAt")

    class Config:
        """Pydantic config."""
        populate_by_name = True

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def complement_for_grouping(address: str) -> tuple:
    """Return (complement, normalized complement) for an address."""
    complement = extract_complement(address)
    return complement, normalize_complement(complement)
