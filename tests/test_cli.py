import json

import pytest

import main


def test_default_run_exports_artifacts(tmp_path):
    stats = main.main(["--output", str(tmp_path), "--ticks", "20"])

    assert stats["ticks"] == 20
    assert stats["elapsed"] == 19.0
    for name in ("history.json", "history.csv", "simulation_config.json", "simulation_config.xml"):
        assert (tmp_path / name).exists()
    assert len(json.loads((tmp_path / "history.json").read_text(encoding="utf-8"))) == 20


def test_training_and_manual_fault(tmp_path):
    stats = main.main(["--output", str(tmp_path), "--ticks", "30", "--train", "10", "--anomaly",
                       "--fault", "supply-power-loss", "--fault-at", "15"])
    assert stats["faults_seen"] == ["supply-power-loss"]

    history = json.loads((tmp_path / "history.json").read_text(encoding="utf-8"))
    assert history[15]["registers"]["power"] == 0.0
    assert history[15]["registers"]["speed"] == 0.0


def test_short_profile_completes_early(tmp_path):
    stats = main.main(["--output", str(tmp_path), "--profile", "load-spike", "--ticks", "500", "--interval", "10"])
    assert stats["ticks"] == 7


def test_rerun_exported_configuration(tmp_path):
    main.main(["--output", str(tmp_path), "--ticks", "2"])
    stats = main.main(["--output", str(tmp_path / "again"), "--ticks", "2",
                       "--config", str(tmp_path / "simulation_config.json")])
    assert stats["ticks"] == 2


def test_unknown_profile_exits_with_error(tmp_path):
    with pytest.raises(SystemExit):
        main.main(["--output", str(tmp_path), "--profile", "missing"])


def test_network_preset_reports_loss_ratio(tmp_path):
    stats = main.main(["--output", str(tmp_path), "--ticks", "10", "--network", "Perfect Network"])
    assert stats["packet_loss_ratio"] == 0.0

    lossy = main.main(["--output", str(tmp_path / "lossy"), "--ticks", "40", "--network", "Very Poor Network"])
    assert 0.0 <= lossy["packet_loss_ratio"] <= 1.0
