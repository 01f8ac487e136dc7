"""
Pipeline orchestrator.

Runs reconciliation over the order rows in batches, groups the results into
stops and records manual corrections back into the learned-location cache.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from stop_pipeline.cache.learned_locations import (
    LearnedLocationCache,
    create_learned_location_store,
)
from stop_pipeline.cache.models import AddressStatus, OrderRow, ReconciledAddress, Stop
from stop_pipeline.config_manager import PipelineConfig
from stop_pipeline.core.coordinates import format_coordinate
from stop_pipeline.errors import EmptyBatchError
from stop_pipeline.geocoding.client import GeocodingClient, create_geocoder
from stop_pipeline.stages.base_stage import ProgressCallback, StageStatistics
from stop_pipeline.stages.grouping import GroupingEngine
from stop_pipeline.stages.reconciliation import ReconciliationStage
from stop_pipeline.utils.exporter import write_records

logger = logging.getLogger(__name__)

MANUAL_CORRECTION_NOTE = "manual-correction"


@dataclass
class PipelineResult:
    """Result of running the entire pipeline."""
    pipeline_id: str
    stops: List[Stop] = field(default_factory=list)
    reconciled: List[ReconciledAddress] = field(default_factory=list)
    dropped: List[ReconciledAddress] = field(default_factory=list)
    total_rows: int = 0
    total_packages: int = 0
    total_time_ms: int = 0
    stage_statistics: List[StageStatistics] = field(default_factory=list)
    start_time: str = ""
    end_time: str = ""

    def status_counts(self) -> Dict[str, int]:
        """Number of stops per status."""
        return dict(Counter(str(stop.status) for stop in self.stops))

    def to_records(self) -> List[Dict[str, Any]]:
        """Flat export records, one per stop."""
        return [stop.to_record() for stop in self.stops]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "pipeline_id": self.pipeline_id,
            "total_rows": self.total_rows,
            "total_packages": self.total_packages,
            "total_stops": len(self.stops),
            "dropped_rows": len(self.dropped),
            "stop_statuses": self.status_counts(),
            "learned_stops": sum(1 for stop in self.stops if stop.learned),
            "total_time_ms": self.total_time_ms,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "stages": [stage.to_dict() for stage in self.stage_statistics],
        }


class Pipeline:
    """Orchestrates reconciliation and grouping."""

    def __init__(
        self,
        reconciliation_stage: ReconciliationStage,
        grouping_engine: Optional[GroupingEngine] = None,
        learned_cache: Optional[LearnedLocationCache] = None,
        name: str = "delivery_stop_pipeline",
    ):
        """Initialize pipeline.

        Args:
            reconciliation_stage: Stage deciding each row's coordinate
            grouping_engine: Engine collapsing rows into stops
            learned_cache: Cache receiving manual corrections; defaults to
                the reconciliation stage's cache
            name: Pipeline name used in logs
        """
        self.reconciliation_stage = reconciliation_stage
        self.grouping_engine = grouping_engine or GroupingEngine()
        self.learned_cache = learned_cache or reconciliation_stage.learned_cache
        self.pipeline_name = name

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        geocoder: Optional[GeocodingClient] = None,
    ) -> "Pipeline":
        """Build a pipeline from validated configuration.

        Args:
            config: Pipeline configuration
            geocoder: Client to use instead of the configured provider

        Returns:
            Pipeline instance
        """
        repository = create_learned_location_store(
            backend=config.learned_store.backend,
            path=config.learned_store.path,
        )
        learned_cache = LearnedLocationCache(repository)

        if geocoder is None and config.geocoder.enabled:
            geocoder = create_geocoder(
                provider=config.geocoder.provider,
                api_key=config.geocoder.api_key,
                api_url=config.geocoder.api_url,
                country=config.geocoder.country,
                timeout=config.geocoder.timeout,
                user_agent=config.geocoder.user_agent,
                min_delay_seconds=config.geocoder.min_delay_seconds,
                max_retries=config.geocoder.max_retries,
                error_wait_seconds=config.geocoder.error_wait_seconds,
            )

        stage = ReconciliationStage(
            geocoder=geocoder,
            learned_cache=learned_cache,
            config={
                "distance_threshold_m": config.reconciliation.distance_threshold_m,
                "report_mismatch_status": config.reconciliation.report_mismatch_status,
            },
            batch_size=config.batch_size,
        )

        return cls(
            reconciliation_stage=stage,
            learned_cache=learned_cache,
            name=config.name,
        )

    def run(
        self,
        rows: List[OrderRow],
        progress_callback: Optional[ProgressCallback] = None,
        pipeline_id: Optional[str] = None,
    ) -> PipelineResult:
        """Reconcile and group order rows.

        Args:
            rows: Order rows with mapped fields
            progress_callback: Called after each batch with
                (rows_done, rows_total, batch_index, batch_count)
            pipeline_id: Optional run ID (generated if not provided)

        Returns:
            PipelineResult with stops and statistics

        Raises:
            EmptyBatchError: If rows is empty
        """
        if not rows:
            raise EmptyBatchError("No order rows to process")

        # Generate pipeline ID if not provided
        if pipeline_id is None:
            pipeline_id = f"pipeline_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        start_time = time.time()
        start_time_str = datetime.now().isoformat()

        logger.info(
            f"Starting {self.pipeline_name} ({pipeline_id}): {len(rows)} rows, "
            f"batches of {self.reconciliation_stage.batch_size}"
        )

        self.reconciliation_stage.reset_statistics()
        stage_results = self.reconciliation_stage.run(rows, progress_callback=progress_callback)
        reconciled = [result.record for result in stage_results if result.record is not None]

        grouping = self.grouping_engine.group(reconciled)

        result = PipelineResult(
            pipeline_id=pipeline_id,
            stops=grouping.stops,
            reconciled=reconciled,
            dropped=grouping.dropped,
            total_rows=len(rows),
            total_packages=sum(len(row.sequences) for row in rows),
            total_time_ms=int((time.time() - start_time) * 1000),
            stage_statistics=[self.reconciliation_stage.get_statistics()],
            start_time=start_time_str,
            end_time=datetime.now().isoformat(),
        )

        logger.info(
            f"Finished {pipeline_id}: {len(result.stops)} stops from {result.total_rows} rows "
            f"({result.total_packages} packages, {len(result.dropped)} dropped)"
        )
        return result

    def apply_manual_correction(
        self,
        stop: Stop,
        lat: Any,
        lng: Any,
        note: str = MANUAL_CORRECTION_NOTE,
    ) -> Stop:
        """Record a human-placed coordinate for a stop.

        The coordinate is saved under the stop's learning key so later runs
        pick it up, and the in-memory stop is updated for export.

        Args:
            stop: Stop to correct (mutated in place)
            lat: Latitude
            lng: Longitude
            note: Note stored on the stop

        Returns:
            The updated stop

        Raises:
            ValueError: If the coordinate is invalid or the stop has no learning key
        """
        if self.learned_cache is None:
            raise ValueError("No learned location cache configured")

        entry = self.learned_cache.save_learned_location(stop.learning_key, lat, lng)

        stop.latitude = format_coordinate(entry.lat)
        stop.longitude = format_coordinate(entry.lng)
        stop.status = AddressStatus.CORRECTED.value
        stop.note = note
        return stop

    def export_results(
        self,
        result: PipelineResult,
        output_path: Path,
        status_filter: Optional[List[str]] = None,
    ) -> int:
        """Export stops to CSV or Excel.

        Args:
            result: Pipeline run result
            output_path: Path to output .csv or .xlsx file
            status_filter: Optional list of statuses to keep

        Returns:
            Number of stops exported
        """
        stops = result.stops
        if status_filter:
            stops = [stop for stop in stops if str(stop.status) in status_filter]

        return write_records([stop.to_record() for stop in stops], output_path)

    def generate_review_queue(self, result: PipelineResult, output_path: Path) -> int:
        """Export the stops a human still has to place.

        Args:
            result: Pipeline run result
            output_path: Path to output .csv or .xlsx file

        Returns:
            Number of stops in the review queue
        """
        records = []
        for stop in result.stops:
            if str(stop.status) != AddressStatus.PENDING.value:
                continue
            record = stop.to_record()
            record["learning_key"] = stop.learning_key
            record["original_address"] = stop.original_address
            records.append(record)

        return write_records(records, output_path)
