"""
Grouping of reconciled rows into delivery stops.

Rows whose corrected (or original) address reduces to the same
street-and-number signature are one physical stop. The stop gets one
coordinate, a worst-case status, the union of package sequences and a
complement only when every row agrees on it.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from stop_pipeline.cache.models import AddressStatus, ReconciledAddress, Stop
from stop_pipeline.core.address_normalizer import (
    extract_normalized_street_and_number,
    street_and_number_display,
)

logger = logging.getLogger(__name__)


@dataclass
class GroupingResult:
    """Stops in first-seen order plus the rows that could not be grouped."""
    stops: List[Stop] = field(default_factory=list)
    dropped: List[ReconciledAddress] = field(default_factory=list)

    @property
    def dropped_count(self) -> int:
        return len(self.dropped)


def rollup_status(records: List[ReconciledAddress]) -> AddressStatus:
    """Worst case wins: pending (or mismatch), then corrected, then valid."""
    statuses = {str(record.status) for record in records}
    if AddressStatus.PENDING.value in statuses or AddressStatus.MISMATCH.value in statuses:
        return AddressStatus.PENDING
    if AddressStatus.CORRECTED.value in statuses:
        return AddressStatus.CORRECTED
    return AddressStatus.VALID


def consolidate_complement(records: List[ReconciledAddress]) -> str:
    """Complement shared by every row, or "" when any row lacks it or differs."""
    normalized = {record.normalized_complement for record in records}
    if len(normalized) != 1 or "" in normalized:
        return ""
    return records[0].complement


def consolidate_coordinates(records: List[ReconciledAddress]) -> Tuple[Optional[str], Optional[str]]:
    """Pick the stop coordinate.

    A corrected row overrides everything (the last one wins). Otherwise a
    learned row beats the rest, and failing that the first row carrying a
    coordinate is used.
    """
    with_coordinates = [record for record in records if record.coordinates is not None]
    if not with_coordinates:
        return None, None

    corrected = [r for r in with_coordinates if str(r.status) == AddressStatus.CORRECTED.value]
    if corrected:
        chosen = corrected[-1]
    else:
        learned = [r for r in with_coordinates if r.learned]
        chosen = learned[0] if learned else with_coordinates[0]

    return chosen.latitude, chosen.longitude


def merge_sequences(records: List[ReconciledAddress]) -> List[str]:
    """Union of sequence identifiers, deduplicated in first-seen order."""
    return list(OrderedDict.fromkeys(
        sequence for record in records for sequence in record.row.sequences
    ))


class GroupingEngine:
    """Collapses reconciled rows into unique stops."""

    def signature_for(self, record: ReconciledAddress) -> str:
        return extract_normalized_street_and_number(
            record.corrected_address or record.original_address
        )

    def group(self, records: List[ReconciledAddress]) -> GroupingResult:
        """Group records by signature, preserving first-seen order.

        Args:
            records: Reconciled rows in input order

        Returns:
            GroupingResult with one Stop per signature
        """
        result = GroupingResult()
        groups: Dict[str, List[ReconciledAddress]] = OrderedDict()

        for record in records:
            signature = self.signature_for(record)
            if not signature:
                logger.warning(
                    f"Dropping row {record.row.row_number}: no street or number in "
                    f"'{record.corrected_address or record.original_address}'"
                )
                result.dropped.append(record)
                continue
            groups.setdefault(signature, []).append(record)

        for signature, members in groups.items():
            result.stops.append(self.build_stop(signature, members))

        logger.info(
            f"Grouped {len(records) - result.dropped_count} rows into {len(result.stops)} stops "
            f"({result.dropped_count} dropped)"
        )
        return result

    def build_stop(self, signature: str, members: List[ReconciledAddress]) -> Stop:
        """Build one Stop from the records sharing a signature."""
        first = members[0]
        latitude, longitude = consolidate_coordinates(members)

        display = (
            street_and_number_display(first.corrected_address)
            or street_and_number_display(first.original_address)
            or signature
        )

        return Stop(
            signature=signature,
            corrected_address=display,
            complement=consolidate_complement(members),
            latitude=latitude,
            longitude=longitude,
            status=rollup_status(members),
            sequences=merge_sequences(members),
            learned=any(member.learned for member in members),
            learning_key=first.row.learning_key,
            original_address=first.original_address,
            neighborhood=first.row.neighborhood,
            city=first.row.city,
            state=first.row.state,
            note=first.note,
            row_count=len(members),
            extra=dict(first.row.extra),
        )
