"""Tests for grouping reconciled rows into stops."""

import pytest

from stop_pipeline.cache.models import AddressStatus, ReconciledAddress, complement_for_grouping
from stop_pipeline.stages.grouping import (
    GroupingEngine,
    consolidate_complement,
    consolidate_coordinates,
    rollup_status,
)


@pytest.fixture
def make_record(make_row):
    """Factory for reconciled records."""
    def _make_record(address="Rua Exemplo, 123", status=AddressStatus.PENDING, lat=None, lng=None,
                     corrected_address=None, learned=False, sequences="A1", row_number=1, **row_fields):
        row = make_row(address, sequences=sequences, row_number=row_number, **row_fields)
        complement, normalized = complement_for_grouping(address)
        return ReconciledAddress(
            row=row,
            original_address=address,
            corrected_address=corrected_address if corrected_address is not None else address,
            latitude=lat,
            longitude=lng,
            status=status,
            learned=learned,
            complement=complement,
            normalized_complement=normalized,
        )
    return _make_record


class TestGroup:
    """Test GroupingEngine.group()."""

    def test_ten_packages_one_stop(self, make_record):
        records = [
            make_record(
                "Rua Exemplo, 123, Casa 2",
                status=AddressStatus.VALID, lat="-23.550520", lng="-46.633308",
                sequences=f"P{i}", row_number=i,
            )
            for i in range(1, 11)
        ]

        result = GroupingEngine().group(records)

        assert len(result.stops) == 1
        stop = result.stops[0]
        assert stop.sequences == [f"P{i}" for i in range(1, 11)]
        assert stop.row_count == 10
        assert stop.complement == "Casa 2"
        assert stop.corrected_address == "Rua Exemplo, 123"
        assert (stop.latitude, stop.longitude) == ("-23.550520", "-46.633308")
        assert stop.status == AddressStatus.VALID

    def test_complement_variants_share_a_stop(self, make_record):
        records = [
            make_record("Rua Exemplo, 123, Fundos", sequences="A1"),
            make_record("Rua Exemplo, 123a, Casa 2", sequences="A2"),
        ]

        result = GroupingEngine().group(records)

        assert len(result.stops) == 1
        assert result.stops[0].complement == ""
        assert result.stops[0].sequences == ["A1", "A2"]

    def test_number_marker_units_share_a_stop(self, make_record):
        records = [
            make_record("Rua Exemplo, n123, casa 2", sequences="A1"),
            make_record("Rua Exemplo, n123, casa 3", sequences="A2"),
            make_record("Rua Exemplo, Nº 123", sequences="A3"),
        ]

        stops = GroupingEngine().group(records).stops

        assert len(stops) == 1
        assert stops[0].signature == "rua exemplo 123"
        assert stops[0].sequences == ["A1", "A2", "A3"]
        assert stops[0].complement == ""

    def test_geocoded_and_raw_rows_converge(self, make_record, sao_paulo_candidate):
        records = [
            make_record(
                "Rua Exemplo, 123", status=AddressStatus.VALID, lat="-23.550600", lng="-46.633308",
                corrected_address=sao_paulo_candidate.display_name,
            ),
            make_record("R. Exemplo, 123, Fundos", sequences="A2"),
        ]

        assert len(GroupingEngine().group(records).stops) == 1

    def test_first_seen_order(self, make_record):
        records = [
            make_record("Rua Bahia, 2", sequences="1"),
            make_record("Rua Acre, 1", sequences="2"),
            make_record("Rua Bahia, 2", sequences="3"),
        ]

        stops = GroupingEngine().group(records).stops

        assert [stop.signature for stop in stops] == ["rua bahia 2", "rua acre 1"]
        assert stops[0].sequences == ["1", "3"]

    def test_duplicate_sequences_are_merged(self, make_record):
        records = [
            make_record(sequences="A1;A2"),
            make_record(sequences="A2;A3"),
        ]

        assert GroupingEngine().group(records).stops[0].sequences == ["A1", "A2", "A3"]

    def test_empty_signature_is_dropped(self, make_record):
        records = [
            make_record("Rua Exemplo, 123"),
            make_record("   "),
        ]

        result = GroupingEngine().group(records)

        assert len(result.stops) == 1
        assert result.dropped_count == 1

    def test_first_row_fields_are_carried(self, make_record):
        records = [
            make_record(neighborhood="Centro", extra={"cliente": "Ana"}),
            make_record(neighborhood="Sé", extra={"cliente": "Bia"}),
        ]

        stop = GroupingEngine().group(records).stops[0]

        assert stop.neighborhood == "Centro"
        assert stop.extra == {"cliente": "Ana"}
        assert stop.learning_key == "rua_exemplo_123_centro_sao_paulo_sp"


class TestRollupStatus:
    """Test worst-case status rollup."""

    def test_pending_wins(self, make_record):
        records = [
            make_record(status=AddressStatus.VALID, lat="-23.5", lng="-46.6"),
            make_record(status=AddressStatus.PENDING),
        ]
        assert rollup_status(records) == AddressStatus.PENDING

    def test_mismatch_counts_as_pending(self, make_record):
        records = [
            make_record(status=AddressStatus.VALID, lat="-23.5", lng="-46.6"),
            make_record(status=AddressStatus.MISMATCH),
        ]
        assert rollup_status(records) == AddressStatus.PENDING

    def test_corrected_beats_valid(self, make_record):
        records = [
            make_record(status=AddressStatus.VALID, lat="-23.5", lng="-46.6"),
            make_record(status=AddressStatus.CORRECTED, lat="-23.6", lng="-46.7"),
        ]
        assert rollup_status(records) == AddressStatus.CORRECTED

    def test_all_valid(self, make_record):
        records = [make_record(status=AddressStatus.VALID, lat="-23.5", lng="-46.6")]
        assert rollup_status(records) == AddressStatus.VALID


class TestConsolidation:
    """Test complement and coordinate consolidation."""

    def test_complement_kept_when_all_agree(self, make_record):
        records = [
            make_record("Rua Exemplo, 123, CASA 2"),
            make_record("Rua Exemplo, 123, casa  2"),
        ]
        assert consolidate_complement(records) == "CASA 2"

    def test_complement_dropped_when_one_row_lacks_it(self, make_record):
        records = [
            make_record("Rua Exemplo, 123, Casa 2"),
            make_record("Rua Exemplo, 123"),
        ]
        assert consolidate_complement(records) == ""

    def test_corrected_row_wins_last(self, make_record):
        records = [
            make_record(status=AddressStatus.CORRECTED, lat="-23.1", lng="-46.1"),
            make_record(status=AddressStatus.VALID, lat="-23.2", lng="-46.2", learned=True),
            make_record(status=AddressStatus.CORRECTED, lat="-23.3", lng="-46.3"),
        ]
        assert consolidate_coordinates(records) == ("-23.3", "-46.3")

    def test_learned_row_beats_plain_rows(self, make_record):
        records = [
            make_record(status=AddressStatus.VALID, lat="-23.1", lng="-46.1"),
            make_record(status=AddressStatus.VALID, lat="-23.2", lng="-46.2", learned=True),
        ]
        assert consolidate_coordinates(records) == ("-23.2", "-46.2")

    def test_first_row_with_coordinates(self, make_record):
        records = [
            make_record(status=AddressStatus.PENDING),
            make_record(status=AddressStatus.PENDING, lat="-23.4", lng="-46.4"),
            make_record(status=AddressStatus.VALID, lat="-23.5", lng="-46.5"),
        ]
        assert consolidate_coordinates(records) == ("-23.4", "-46.4")

    def test_no_coordinates(self, make_record):
        assert consolidate_coordinates([make_record()]) == (None, None)


def test_stop_to_record(make_record):
    records = [
        make_record("Rua Exemplo, 123, Casa 2", status=AddressStatus.VALID, lat="-23.5", lng="-46.6",
                    sequences="A1", extra={"cliente": "Ana"}),
        make_record("Rua Exemplo, 123, Casa 2", status=AddressStatus.VALID, lat="-23.5", lng="-46.6",
                    sequences="A2", extra={"cliente": "Ana"}),
    ]

    record = GroupingEngine().group(records).stops[0].to_record()

    assert record["sequence"] == "A1;A2"
    assert record["package_count"] == 2
    assert record["status"] == "valid"
    assert record["complement"] == "Casa 2"
    assert record["cliente"] == "Ana"
