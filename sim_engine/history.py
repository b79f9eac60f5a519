"""
History & Replay
================
Append-only record of completed ticks with time-window filtering, paced
playback and file export.

  HistoryBuffer     timestamps are non-decreasing; optional retention limit
  HistoryReplayer   delay between points = timestamp gap / speed
  export_json/csv   the history panel's "export" button
"""

import csv
import json
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from loguru import logger

from sim_config.errors import EngineStateError
from sim_config.ontology import HistoricalDataPoint

TIME_RANGES = {
    "1m": timedelta(minutes=1),
    "5m": timedelta(minutes=5),
    "15m": timedelta(minutes=15),
    "all": None,
}


class HistoryBuffer:
    def __init__(self, limit: Optional[int] = None):
        if limit is not None and limit <= 0:
            raise ValueError(f"history limit must be positive, got {limit}")
        self.limit = limit
        self._points: list[HistoricalDataPoint] = []

    def __len__(self) -> int:
        return len(self._points)

    def append(self, point: HistoricalDataPoint):
        if self._points and point.timestamp < self._points[-1].timestamp:
            raise EngineStateError(
                f"history timestamps must not decrease ({point.timestamp.isoformat()} "
                f"< {self._points[-1].timestamp.isoformat()})")
        self._points.append(point)
        if self.limit is not None and len(self._points) > self.limit:
            del self._points[:len(self._points) - self.limit]

    def clear(self):
        self._points = []

    def points(self) -> tuple[HistoricalDataPoint, ...]:
        return tuple(self._points)

    @property
    def latest(self) -> Optional[HistoricalDataPoint]:
        return self._points[-1] if self._points else None

    def filter_range(self, time_range: str = "all", now: Optional[datetime] = None) -> list[HistoricalDataPoint]:
        """Points no older than the window ending at `now` (default: the newest point)."""
        if time_range not in TIME_RANGES:
            raise ValueError(f"unknown time range '{time_range}', expected one of {list(TIME_RANGES)}")
        window = TIME_RANGES[time_range]
        if window is None or not self._points:
            return list(self._points)
        end = now if now is not None else self._points[-1].timestamp
        cutoff = end - window
        return [p for p in self._points if cutoff <= p.timestamp <= end]

    def between(self, start: datetime, end: datetime) -> list[HistoricalDataPoint]:
        return [p for p in self._points if start <= p.timestamp <= end]


class HistoryReplayer:
    """
    Plays a captured sequence of points back at a multiple of real time.
    Playback is read-only: it never touches the engine or its history.
    """

    def __init__(self, points: Iterable[HistoricalDataPoint], speed: float = 1.0, clock=None):
        if speed <= 0:
            raise ValueError(f"replay speed must be positive, got {speed}")
        self.points = list(points)
        self.speed = speed
        self._sleep = clock.sleep if clock is not None else time.sleep
        self._stopped = False

    def schedule(self) -> list[tuple[float, HistoricalDataPoint]]:
        """(delay before emitting, point) pairs; the first point is emitted immediately."""
        plan = []
        previous = None
        for point in self.points:
            gap = 0.0 if previous is None else max(0.0, (point.timestamp - previous.timestamp).total_seconds())
            plan.append((gap / self.speed, point))
            previous = point
        return plan

    def play(self) -> Iterator[HistoricalDataPoint]:
        self._stopped = False
        logger.info(f"Replaying {len(self.points)} points at {self.speed}x")
        for delay, point in self.schedule():
            if delay > 0:
                self._sleep(delay)
            if self._stopped:
                logger.info("Replay stopped")
                return
            yield point

    def stop(self):
        self._stopped = True


# ── Export ──────────────────────────────────────────

def export_json(points: Sequence[HistoricalDataPoint], filepath) -> Path:
    path = Path(filepath)
    path.write_text(json.dumps([p.to_dict() for p in points], indent=2), encoding="utf-8")
    logger.info(f"History JSON: {path} ({len(points):,} points)")
    return path


def export_csv(points: Sequence[HistoricalDataPoint], filepath) -> Path:
    """One row per point, one column per register (union over all points, first-seen order)."""
    path = Path(filepath)
    columns: list[str] = []
    for p in points:
        for name in p.registers:
            if name not in columns:
                columns.append(name)

    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["timestamp", "elapsed", *columns, "alarms", "faults", "anomaly_score"])
        for p in points:
            writer.writerow([
                p.timestamp.isoformat(), p.elapsed,
                *[p.registers.get(name, "") for name in columns],
                ";".join(p.alarms), ";".join(p.faults), p.anomaly_score,
            ])
    logger.info(f"History CSV: {path} ({len(points):,} rows)")
    return path
