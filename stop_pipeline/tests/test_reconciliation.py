"""Tests for the geocoding reconciliation stage."""

import pytest
from geopy.exc import GeocoderServiceError

from stop_pipeline.cache.models import AddressStatus, GeocodeCandidate
from stop_pipeline.stages.reconciliation import ReconciliationStage, build_search_query

QUERY = "Rua Exemplo, 123, Centro, São Paulo, SP"


def notes_of(record):
    return record.note.split(";")


class TestLearnedLocation:
    """Learned locations take precedence over everything else."""

    def test_learned_hit_skips_geocoder(self, fake_geocoder, learned_cache, make_row, sao_paulo_candidate):
        row = make_row(latitude="-23.0", longitude="-46.0")
        learned_cache.save_learned_location(row.learning_key, -23.551, -46.634)
        fake_geocoder.default = sao_paulo_candidate
        stage = ReconciliationStage(geocoder=fake_geocoder, learned_cache=learned_cache)

        record = stage.process_row(row)

        assert record.status == AddressStatus.VALID
        assert record.learned is True
        assert (record.latitude, record.longitude) == ("-23.551000", "-46.634000")
        assert record.note == "learned-location"
        assert fake_geocoder.calls == []

    def test_learned_key_ignores_complement(self, fake_geocoder, learned_cache, make_row):
        learned_cache.save_learned_location(make_row("Rua Exemplo, 123, Fundos").learning_key, -23.551, -46.634)
        stage = ReconciliationStage(geocoder=fake_geocoder, learned_cache=learned_cache)

        assert stage.process_row(make_row("Rua Exemplo, 123a, Casa 2")).learned is True


class TestSourceCoordinates:
    """Spreadsheet coordinates arbitrated against the geocoder."""

    def test_source_agrees_with_geocoder(self, fake_geocoder, make_row, sao_paulo_candidate):
        fake_geocoder.default = sao_paulo_candidate
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row(latitude="-23,550520", longitude="-46,633308"))

        assert record.status == AddressStatus.VALID
        assert (record.latitude, record.longitude) == ("-23.550520", "-46.633308")
        assert record.corrected_address == sao_paulo_candidate.display_name
        notes = notes_of(record)
        assert notes[:3] == ["from-source", "geocoder-match", "source-agrees"]
        assert notes[3].startswith("distance=")

    def test_source_disagrees_with_geocoder(self, fake_geocoder, make_row, sao_paulo_candidate):
        fake_geocoder.default = sao_paulo_candidate
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row(latitude="-23.560000", longitude="-46.633308"))

        assert record.status == AddressStatus.PENDING
        assert record.latitude == "-23.560000"
        assert record.corrected_address == "Rua Exemplo, 123"
        notes = notes_of(record)
        assert "source-disagrees" in notes
        assert "geocoder=-23.550600,-46.633308" in notes

    def test_threshold_is_configurable(self, fake_geocoder, make_row, sao_paulo_candidate):
        fake_geocoder.default = sao_paulo_candidate
        stage = ReconciliationStage(geocoder=fake_geocoder, config={"distance_threshold_m": 5000})

        record = stage.process_row(make_row(latitude="-23.560000", longitude="-46.633308"))

        assert record.status == AddressStatus.VALID
        assert "source-agrees" in notes_of(record)

    def test_source_kept_when_geocoder_fails(self, fake_geocoder, make_row):
        fake_geocoder.default = GeocoderServiceError("provider down")
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row(latitude="-23.55052", longitude="-46.633308"))

        assert record.status == AddressStatus.VALID
        assert notes_of(record) == ["from-source", "geocoder-error", "source-kept"]

    def test_source_kept_when_geocoder_finds_nothing(self, fake_geocoder, make_row):
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row(latitude="-23.55052", longitude="-46.633308"))

        assert record.status == AddressStatus.VALID
        assert notes_of(record) == ["from-source", "geocoder-not-found", "source-kept"]

    def test_out_of_range_source_is_ignored(self, fake_geocoder, make_row):
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row(latitude="123", longitude="-46.6"))

        assert record.status == AddressStatus.PENDING
        assert "from-source" not in notes_of(record)
        assert record.latitude is None


class TestGeocoderOnly:
    """Rows without spreadsheet coordinates."""

    def test_geocoder_match(self, fake_geocoder, make_row, sao_paulo_candidate):
        fake_geocoder.default = sao_paulo_candidate
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row())

        assert record.status == AddressStatus.VALID
        assert (record.latitude, record.longitude) == ("-23.550600", "-46.633308")
        assert record.note == "geocoder-match"

    def test_not_found_is_pending(self, fake_geocoder, make_row):
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row())

        assert record.status == AddressStatus.PENDING
        assert record.latitude is None
        assert record.note == "geocoder-not-found"

    def test_wrong_city_is_rejected(self, fake_geocoder, make_row):
        fake_geocoder.default = GeocodeCandidate(
            lat=-22.9, lng=-47.06, display_name="Rua Exemplo, Campinas",
            address={"suburb": "Centro", "city": "Campinas", "state": "São Paulo"},
        )
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row())

        assert record.status == AddressStatus.PENDING
        assert record.latitude is None
        assert notes_of(record) == ["geocoder-mismatch", "city-mismatch"]

    def test_mismatch_status_when_enabled(self, fake_geocoder, make_row):
        fake_geocoder.default = GeocodeCandidate(
            lat=-22.9, lng=-47.06, address={"suburb": "Centro", "city": "Campinas", "state": "São Paulo"},
        )
        stage = ReconciliationStage(geocoder=fake_geocoder, config={"report_mismatch_status": True})

        assert stage.process_row(make_row()).status == AddressStatus.MISMATCH

    def test_geocoding_disabled(self, make_row):
        record = ReconciliationStage(geocoder=None).process_row(make_row())

        assert record.status == AddressStatus.PENDING
        assert record.note == "geocoder-disabled"
        assert record.search_used == ""

    def test_search_used(self, fake_geocoder, make_row):
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row())

        assert fake_geocoder.calls == [QUERY]
        assert record.search_used == f"fake:{QUERY}"


class TestBlockAndLot:
    """Subdivision references are never geocoded."""

    def test_skipped_without_source(self, fake_geocoder, make_row, sao_paulo_candidate):
        fake_geocoder.default = sao_paulo_candidate
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row("Quadra 12 Lote 5"))

        assert fake_geocoder.calls == []
        assert record.status == AddressStatus.PENDING
        assert notes_of(record) == ["block-lot", "geocoding-skipped"]

    def test_source_coordinates_are_kept(self, fake_geocoder, make_row):
        stage = ReconciliationStage(geocoder=fake_geocoder)

        record = stage.process_row(make_row("Qd. 3, Lt. 14", latitude="-16.7", longitude="-49.3"))

        assert record.status == AddressStatus.PENDING
        assert (record.latitude, record.longitude) == ("-16.700000", "-49.300000")
        assert notes_of(record) == ["from-source", "block-lot", "geocoding-skipped"]


def test_build_search_query_skips_empty_parts(make_row):
    assert build_search_query(make_row(neighborhood=None)) == "Rua Exemplo, 123, São Paulo, SP"


def test_complement_is_recorded(fake_geocoder, make_row):
    record = ReconciliationStage(geocoder=fake_geocoder).process_row(make_row("Rua Exemplo, 123, CASA 2"))

    assert record.complement == "CASA 2"
    assert record.normalized_complement == "casa 2"


class TestBatching:
    """Batch processing and failure isolation."""

    def test_row_failure_does_not_abort_batch(self, fake_geocoder, make_row, sao_paulo_candidate):
        fake_geocoder.default = sao_paulo_candidate
        fake_geocoder.responses["Rua Quebrada, 1, Centro, São Paulo, SP"] = RuntimeError("boom")
        stage = ReconciliationStage(geocoder=fake_geocoder)
        rows = [
            make_row(row_number=1),
            make_row("Rua Quebrada, 1", row_number=2),
            make_row(row_number=3),
        ]

        results = stage.run(rows)

        assert [r.success for r in results] == [True, False, True]
        assert results[1].record.status == AddressStatus.PENDING
        assert results[1].record.note == "reconciliation-error"
        assert stage.get_statistics().failed == 1

    def test_progress_reported_per_batch(self, fake_geocoder, make_row):
        stage = ReconciliationStage(geocoder=fake_geocoder, batch_size=50)
        rows = [make_row(row_number=i) for i in range(1, 121)]
        progress = []

        results = stage.run(rows, progress_callback=lambda *args: progress.append(args))

        assert len(results) == 120
        assert progress == [(50, 120, 1, 3), (100, 120, 2, 3), (120, 120, 3, 3)]
        assert [r.row_number for r in results] == list(range(1, 121))

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            ReconciliationStage(batch_size=0)

    def test_statistics_count_statuses(self, fake_geocoder, make_row, sao_paulo_candidate):
        fake_geocoder.responses[QUERY] = sao_paulo_candidate
        stage = ReconciliationStage(geocoder=fake_geocoder)

        stage.run([make_row(), make_row("Rua Outra, 9")])

        stats = stage.get_statistics().to_dict()
        assert stats["statuses"] == {"valid": 1, "pending": 1}
        assert stats["batches"] == 1
