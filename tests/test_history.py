import csv
import json
from datetime import datetime, timedelta

import pytest

from sim_config.errors import EngineStateError
from sim_config.ontology import HistoricalDataPoint
from sim_engine.history import HistoryBuffer, HistoryReplayer, export_csv, export_json
from sim_engine.scheduler import FakeClock

START = datetime(2025, 1, 1)


def point(seconds, **registers):
    return HistoricalDataPoint(timestamp=START + timedelta(seconds=seconds), registers=registers or {"t": seconds},
                               elapsed=seconds)


def test_timestamps_must_not_decrease():
    buffer = HistoryBuffer()
    buffer.append(point(10))
    buffer.append(point(10))
    with pytest.raises(EngineStateError):
        buffer.append(point(5))
    assert len(buffer) == 2


def test_points_is_an_immutable_snapshot():
    buffer = HistoryBuffer()
    buffer.append(point(0))
    snapshot = buffer.points()
    buffer.append(point(1))
    assert isinstance(snapshot, tuple)
    assert len(snapshot) == 1


def test_retention_limit_keeps_newest():
    buffer = HistoryBuffer(limit=3)
    for s in range(5):
        buffer.append(point(s))
    assert [p.elapsed for p in buffer.points()] == [2, 3, 4]


def test_filter_range_defaults_to_latest_timestamp():
    buffer = HistoryBuffer()
    for s in (0, 30, 90, 120):
        buffer.append(point(s))
    assert [p.elapsed for p in buffer.filter_range("1m")] == [90, 120]
    assert [p.elapsed for p in buffer.filter_range("5m")] == [0, 30, 90, 120]
    assert len(buffer.filter_range("all")) == 4


def test_filter_range_with_explicit_now():
    buffer = HistoryBuffer()
    for s in (0, 30, 90, 120):
        buffer.append(point(s))
    assert [p.elapsed for p in buffer.filter_range("1m", now=START + timedelta(seconds=60))] == [0, 30]


def test_unknown_time_range():
    with pytest.raises(ValueError):
        HistoryBuffer().filter_range("2h")


def test_between_is_inclusive():
    buffer = HistoryBuffer()
    for s in range(5):
        buffer.append(point(s))
    found = buffer.between(START + timedelta(seconds=1), START + timedelta(seconds=3))
    assert [p.elapsed for p in found] == [1, 2, 3]


def test_replay_schedule_scales_gaps_by_speed():
    replayer = HistoryReplayer([point(0), point(10), point(30)], speed=2.0)
    assert [delay for delay, _ in replayer.schedule()] == [0.0, 5.0, 10.0]


def test_replay_speed_must_be_positive():
    with pytest.raises(ValueError):
        HistoryReplayer([point(0)], speed=0)


def test_play_sleeps_on_clock():
    clock = FakeClock(START)
    replayer = HistoryReplayer([point(0), point(10), point(30)], speed=5.0, clock=clock)
    assert [p.elapsed for p in replayer.play()] == [0, 10, 30]
    assert clock.monotonic() == pytest.approx(6.0)


def test_stop_halts_playback():
    replayer = HistoryReplayer([point(0), point(1), point(2)], clock=FakeClock(START))
    played = []
    for p in replayer.play():
        played.append(p)
        replayer.stop()
    assert len(played) == 1


def test_export_json_and_csv(tmp_path):
    points = [
        HistoricalDataPoint(timestamp=START, registers={"temperature": 20.0}, alarms=["hot"], elapsed=0),
        HistoricalDataPoint(timestamp=START + timedelta(seconds=1), registers={"temperature": 21.0, "power": 5.0},
                            faults=["f1", "f2"], elapsed=1, anomaly_score=0.5),
    ]

    data = json.loads(export_json(points, tmp_path / "history.json").read_text(encoding="utf-8"))
    assert data[1]["registers"] == {"temperature": 21.0, "power": 5.0}
    assert data[1]["anomalyScore"] == 0.5

    with open(export_csv(points, tmp_path / "history.csv"), newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0] == ["timestamp", "elapsed", "temperature", "power", "alarms", "faults", "anomaly_score"]
    assert rows[1][2:6] == ["20.0", "", "hot", ""]
    assert rows[2][5] == "f1;f2"
