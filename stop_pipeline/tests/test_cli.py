"""Tests for the command-line interface."""

import json

import pandas as pd

from stop_pipeline.cli import main


def write_orders(path):
    pd.DataFrame({
        "Endereço": ["Rua Exemplo, 123, Casa 2", "Rua Exemplo, 123a, Casa 2", "Quadra 4 Lote 9"],
        "Bairro": ["Centro", "Centro", "Setor Sul"],
        "Cidade": ["São Paulo", "São Paulo", "Goiânia"],
        "UF": ["SP", "SP", "GO"],
        "Latitude": ["-23.550520", "-23.550530", "-16.700000"],
        "Longitude": ["-46.633308", "-46.633300", "-49.300000"],
    }).to_csv(path, index=False)
    return path


def test_run_without_geocoder(tmp_path):
    orders = write_orders(tmp_path / "orders.csv")
    output = tmp_path / "stops.csv"
    review = tmp_path / "review.csv"

    exit_code = main([
        str(orders), "-o", str(output), "-r", str(review),
        "--no-geocode", "--backend", "memory", "-q",
    ])

    assert exit_code == 0
    stops = pd.read_csv(output, dtype=str)
    assert len(stops) == 2
    assert stops.loc[0, "sequence"] == "1;2"
    assert stops.loc[0, "status"] == "valid"
    assert stops.loc[1, "status"] == "pending"
    assert len(pd.read_csv(review, dtype=str)) == 1


def test_missing_address_column(tmp_path, capsys):
    orders = tmp_path / "orders.csv"
    pd.DataFrame({"Cliente": ["Ana"]}).to_csv(orders, index=False)

    exit_code = main([str(orders), "--no-geocode", "--backend", "memory", "-q"])

    assert exit_code == 1
    assert "Address column not found" in capsys.readouterr().err


def test_missing_input_file(tmp_path):
    assert main([str(tmp_path / "missing.csv"), "--backend", "memory", "-q"]) == 1


def test_learn_writes_store(tmp_path):
    store = tmp_path / "learned.json"

    exit_code = main([
        "--learn", "rua_exemplo_123_centro_sao_paulo_sp", "-23.550520", "-46.633308",
        "--learned-store", str(store), "-q",
    ])

    assert exit_code == 0
    data = json.loads(store.read_text(encoding="utf-8"))
    assert data["rua_exemplo_123_centro_sao_paulo_sp"]["lat"] == -23.55052


def test_learn_rejects_invalid_coordinate(tmp_path):
    store = tmp_path / "learned.json"

    exit_code = main(["--learn", "some_key", "95", "10", "--learned-store", str(store), "-q"])

    assert exit_code == 1
    assert not store.exists()


def test_learned_location_is_used_on_next_run(tmp_path):
    store = tmp_path / "learned.db"
    orders = write_orders(tmp_path / "orders.csv")
    output = tmp_path / "stops.csv"

    main([
        "--learn", "quadra_4_lote_9_setor_sul_goiania_go", "-16.71", "-49.31",
        "--backend", "sqlite", "--learned-store", str(store), "-q",
    ])
    exit_code = main([
        str(orders), "-o", str(output), "--no-geocode",
        "--backend", "sqlite", "--learned-store", str(store), "-q",
    ])

    assert exit_code == 0
    stops = pd.read_csv(output, dtype=str)
    assert stops.loc[1, "status"] == "valid"
    assert stops.loc[1, "learned"] == "True"
    assert stops.loc[1, "latitude"] == "-16.710000"


def test_corrections_sheet(tmp_path):
    store = tmp_path / "learned.json"
    orders = write_orders(tmp_path / "orders.csv")
    corrections = tmp_path / "fixes.csv"
    pd.DataFrame({
        "signature": ["quadra 4 lote 9"],
        "latitude": ["-16.72"],
        "longitude": ["-49.32"],
    }).to_csv(corrections, index=False)

    exit_code = main([
        str(orders), "-o", str(tmp_path / "stops.csv"), "--no-geocode",
        "--learned-store", str(store), "--corrections", str(corrections), "-q",
    ])

    assert exit_code == 0
    data = json.loads(store.read_text(encoding="utf-8"))
    assert data["quadra_4_lote_9_setor_sul_goiania_go"]["lat"] == -16.72


def test_init_config(tmp_path):
    path = tmp_path / "pipeline.yaml"
    assert main(["--init-config", str(path), "-q"]) == 0
    assert "locationiq" in path.read_text(encoding="utf-8")


def test_bad_correction_rows_are_skipped(tmp_path):
    store = tmp_path / "learned.json"
    orders = write_orders(tmp_path / "orders.csv")
    output = tmp_path / "stops.csv"
    corrections = tmp_path / "fixes.csv"
    pd.DataFrame({
        "signature": ["rua exemplo 123", "quadra 4 lote 9"],
        "latitude": ["", "-16.72"],
        "longitude": ["abc", "-49.32"],
    }).to_csv(corrections, index=False)

    exit_code = main([
        str(orders), "-o", str(output), "--no-geocode",
        "--learned-store", str(store), "--corrections", str(corrections), "-q",
    ])

    assert exit_code == 0
    data = json.loads(store.read_text(encoding="utf-8"))
    assert list(data) == ["quadra_4_lote_9_setor_sul_goiania_go"]
    stops = pd.read_csv(output, dtype=str)
    assert stops.loc[1, "status"] == "corrected"
    assert stops.loc[0, "status"] == "valid"
