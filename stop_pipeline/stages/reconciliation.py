"""
Geocoding reconciliation stage.

Decides the final coordinate and status of each order row by arbitrating, in
priority order, between a learned location, the spreadsheet coordinates and
one geocoder lookup whose administrative area must agree with the row.

Every decision leaves machine-readable reason tags in the record's note,
joined with ";".
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from geopy.exc import GeocoderServiceError

from stop_pipeline.cache.learned_locations import LearnedLocationCache
from stop_pipeline.cache.models import (
    AddressStatus,
    GeocodeCandidate,
    OrderRow,
    ReconciledAddress,
    complement_for_grouping,
)
from stop_pipeline.core.address_normalizer import is_block_and_lot
from stop_pipeline.core.coordinates import format_coordinate, haversine_distance_m
from stop_pipeline.core.validation_rules import ValidationEngine
from stop_pipeline.geocoding.client import GeocodingClient
from stop_pipeline.stages.base_stage import DEFAULT_BATCH_SIZE, BaseStage

logger = logging.getLogger(__name__)

DEFAULT_DISTANCE_THRESHOLD_M = 50.0
NOTE_SEPARATOR = ";"


@dataclass
class GeocodeOutcome:
    """What one geocoder lookup produced for a row."""
    tag: str  # geocoder-match, geocoder-mismatch, geocoder-not-found, geocoder-error, geocoder-disabled
    candidate: Optional[GeocodeCandidate] = None
    flags: Optional[List[str]] = None

    @property
    def matched(self) -> bool:
        return self.tag == "geocoder-match"


def build_search_query(row: OrderRow) -> str:
    """Join the non-empty address parts with ", "."""
    parts = [row.address, row.neighborhood, row.city, row.state]
    return ", ".join(part for part in parts if part)


def _format_pair(coordinates: Optional[Tuple[float, float]]) -> Tuple[Optional[str], Optional[str]]:
    if coordinates is None:
        return None, None
    return format_coordinate(coordinates[0]), format_coordinate(coordinates[1])


class ReconciliationStage(BaseStage):
    """Arbitrates learned, spreadsheet and geocoder coordinates per row."""

    def __init__(
        self,
        geocoder: Optional[GeocodingClient] = None,
        learned_cache: Optional[LearnedLocationCache] = None,
        validation_engine: Optional[ValidationEngine] = None,
        config: Optional[Dict[str, Any]] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        """Initialize reconciliation stage.

        Args:
            geocoder: Client used for lookups; None disables geocoding
            learned_cache: Learned-location cache consulted before geocoding
            validation_engine: Administrative-area rules
            config: Options distance_threshold_m and report_mismatch_status
            batch_size: Rows per batch between progress reports
        """
        super().__init__(
            stage_name="reconciliation",
            config=config,
            batch_size=batch_size,
        )
        self.geocoder = geocoder
        self.learned_cache = learned_cache
        self.validation_engine = validation_engine or ValidationEngine()

        self.distance_threshold_m = float(
            self.config.get("distance_threshold_m", DEFAULT_DISTANCE_THRESHOLD_M)
        )
        self.report_mismatch_status = bool(self.config.get("report_mismatch_status", False))

    def process_row(self, row: OrderRow) -> ReconciledAddress:
        complement, normalized_complement = complement_for_grouping(row.address)
        base = {
            "row": row,
            "original_address": row.address,
            "complement": complement,
            "normalized_complement": normalized_complement,
        }

        # 0. Learned location
        learned = self.learned_cache.load_learned_location(row.learning_key) if self.learned_cache else None
        if learned is not None:
            return ReconciledAddress(
                **base,
                corrected_address=row.address,
                latitude=format_coordinate(learned.lat),
                longitude=format_coordinate(learned.lng),
                status=AddressStatus.VALID,
                learned=True,
                note="learned-location",
            )

        # 1. Spreadsheet coordinates
        source = row.source_coordinates
        source_lat, source_lng = _format_pair(source)
        notes = ["from-source"] if source else []

        # 2. Subdivision references are never sent to the geocoder
        if is_block_and_lot(row.address):
            notes.extend(["block-lot", "geocoding-skipped"])
            return ReconciledAddress(
                **base,
                corrected_address=row.address,
                latitude=source_lat,
                longitude=source_lng,
                status=AddressStatus.PENDING,
                note=NOTE_SEPARATOR.join(notes),
            )

        # 3-4. Geocode and validate the administrative area
        query = build_search_query(row)
        outcome = self.geocode(row, query)
        search_used = f"{self.geocoder.name}:{query}" if self.geocoder is not None else ""
        notes.append(outcome.tag)
        if outcome.flags:
            notes.extend(outcome.flags)

        base["search_used"] = search_used

        # 5. Arbitration
        if source is None:
            if outcome.matched:
                candidate = outcome.candidate
                return ReconciledAddress(
                    **base,
                    corrected_address=candidate.display_name or row.address,
                    latitude=format_coordinate(candidate.lat),
                    longitude=format_coordinate(candidate.lng),
                    status=AddressStatus.VALID,
                    note=NOTE_SEPARATOR.join(notes),
                )

            status = AddressStatus.PENDING
            if outcome.tag == "geocoder-mismatch" and self.report_mismatch_status:
                status = AddressStatus.MISMATCH
            return ReconciledAddress(
                **base,
                corrected_address=row.address,
                status=status,
                note=NOTE_SEPARATOR.join(notes),
            )

        if not outcome.matched:
            notes.append("source-kept")
            return ReconciledAddress(
                **base,
                corrected_address=row.address,
                latitude=source_lat,
                longitude=source_lng,
                status=AddressStatus.VALID,
                note=NOTE_SEPARATOR.join(notes),
            )

        candidate = outcome.candidate
        distance = haversine_distance_m(source[0], source[1], candidate.lat, candidate.lng)

        if distance <= self.distance_threshold_m:
            notes.extend(["source-agrees", f"distance={distance:.1f}m"])
            return ReconciledAddress(
                **base,
                corrected_address=candidate.display_name or row.address,
                latitude=source_lat,
                longitude=source_lng,
                status=AddressStatus.VALID,
                note=NOTE_SEPARATOR.join(notes),
            )

        notes.extend([
            "source-disagrees",
            f"distance={distance:.1f}m",
            f"geocoder={format_coordinate(candidate.lat)},{format_coordinate(candidate.lng)}",
        ])
        logger.info(
            f"Row {row.row_number}: spreadsheet and geocoder disagree by {distance:.0f}m "
            f"for '{row.address}'"
        )
        return ReconciledAddress(
            **base,
            corrected_address=row.address,
            latitude=source_lat,
            longitude=source_lng,
            status=AddressStatus.PENDING,
            note=NOTE_SEPARATOR.join(notes),
        )

    def geocode(self, row: OrderRow, query: str) -> GeocodeOutcome:
        """Run one lookup and check the result against the row's declared area."""
        if self.geocoder is None:
            return GeocodeOutcome(tag="geocoder-disabled")

        try:
            candidate = self.geocoder.search(query)
        except GeocoderServiceError as e:
            logger.warning(f"Row {row.row_number}: geocoding failed for '{query}': {e}")
            return GeocodeOutcome(tag="geocoder-error")

        if candidate is None:
            logger.debug(f"Row {row.row_number}: no geocoder result for '{query}'")
            return GeocodeOutcome(tag="geocoder-not-found")

        results = self.validation_engine.validate(
            declared={
                "neighborhood": row.neighborhood,
                "city": row.city,
                "state": row.state,
            },
            provider_address=candidate.address,
        )
        if results:
            flags = self.validation_engine.get_validation_flags(results)
            logger.debug(f"Row {row.row_number}: geocoder result rejected ({', '.join(flags)})")
            return GeocodeOutcome(tag="geocoder-mismatch", candidate=candidate, flags=flags)

        return GeocodeOutcome(tag="geocoder-match", candidate=candidate)
