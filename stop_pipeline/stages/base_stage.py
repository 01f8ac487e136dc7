"""
Base class for row-processing stages.

A stage turns OrderRows into ReconciledAddress records one at a time, in
bounded sequential batches, reporting progress after each batch. A failure
on one row never aborts the batch: it becomes a pending record.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from stop_pipeline.cache.models import AddressStatus, OrderRow, ReconciledAddress

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50

# (rows_done, rows_total, batch_index, batch_count)
ProgressCallback = Callable[[int, int, int, int], None]


@dataclass
class StageResult:
    """Result of processing a single row through a stage."""
    row_number: Optional[int]
    success: bool
    record: Optional[ReconciledAddress] = None
    error: Optional[str] = None
    processing_time_ms: int = 0


@dataclass
class StageStatistics:
    """Statistics for a stage run."""
    stage_name: str
    total_rows: int = 0
    succeeded: int = 0
    failed: int = 0
    learned: int = 0
    batches: int = 0
    statuses: Dict[str, int] = field(default_factory=dict)
    total_time_ms: int = 0

    def add_result(self, result: StageResult) -> None:
        """Add a result to statistics."""
        self.total_rows += 1
        self.total_time_ms += result.processing_time_ms

        if result.success:
            self.succeeded += 1
        else:
            self.failed += 1

        if result.record is not None:
            status = str(result.record.status)
            self.statuses[status] = self.statuses.get(status, 0) + 1
            if result.record.learned:
                self.learned += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "stage_name": self.stage_name,
            "total_rows": self.total_rows,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "learned": self.learned,
            "batches": self.batches,
            "statuses": dict(self.statuses),
            "avg_time_ms": self.total_time_ms / self.total_rows if self.total_rows > 0 else 0,
            "total_time_ms": self.total_time_ms,
        }


class BaseStage(ABC):
    """Abstract base class for pipeline stages."""

    def __init__(
        self,
        stage_name: str,
        config: Optional[Dict[str, Any]] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        """Initialize stage.

        Args:
            stage_name: Unique name for this stage
            config: Stage configuration from pipeline config
            batch_size: Rows per batch between progress reports
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        self.stage_name = stage_name
        self.config = config or {}
        self.batch_size = batch_size

        # Statistics
        self.stats = StageStatistics(stage_name=stage_name)

    @abstractmethod
    def process_row(self, row: OrderRow) -> ReconciledAddress:
        """Process a single row and return its reconciled record.

        Args:
            row: Order row with mapped fields

        Returns:
            ReconciledAddress for the row
        """
        pass

    def run(
        self,
        rows: List[OrderRow],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[StageResult]:
        """Run stage on a list of rows in sequential batches.

        Args:
            rows: Rows to process, in input order
            progress_callback: Called after each batch with
                (rows_done, rows_total, batch_index, batch_count)

        Returns:
            List of StageResult in input order
        """
        results = []
        total = len(rows)
        batch_count = (total + self.batch_size - 1) // self.batch_size

        for batch_index in range(batch_count):
            start = batch_index * self.batch_size
            batch = rows[start:start + self.batch_size]

            for row in batch:
                result = self.run_single(row)
                results.append(result)
                self.stats.add_result(result)

            self.stats.batches += 1
            logger.debug(
                f"{self.stage_name}: batch {batch_index + 1}/{batch_count} done "
                f"({len(results)}/{total} rows)"
            )
            if progress_callback is not None:
                progress_callback(len(results), total, batch_index + 1, batch_count)

        return results

    def run_single(self, row: OrderRow) -> StageResult:
        """Run stage on a single row.

        Args:
            row: Order row

        Returns:
            StageResult
        """
        start_time = time.time()

        try:
            record = self.process_row(row)

            return StageResult(
                row_number=row.row_number,
                success=True,
                record=record,
                processing_time_ms=int((time.time() - start_time) * 1000)
            )

        except Exception as e:
            logger.warning(f"{self.stage_name}: row {row.row_number} failed: {e}")

            return StageResult(
                row_number=row.row_number,
                success=False,
                record=self.failed_record(row, e),
                error=str(e),
                processing_time_ms=int((time.time() - start_time) * 1000)
            )

    def failed_record(self, row: OrderRow, error: Exception) -> ReconciledAddress:
        """Pending record for a row whose processing raised."""
        return ReconciledAddress(
            row=row,
            original_address=row.address,
            corrected_address=row.address,
            status=AddressStatus.PENDING,
            note=f"{self.stage_name}-error",
        )

    def get_statistics(self) -> StageStatistics:
        """Get stage statistics.

        Returns:
            StageStatistics
        """
        return self.stats

    def reset_statistics(self) -> None:
        """Reset statistics."""
        self.stats = StageStatistics(stage_name=self.stage_name)
