"""
Anomaly Scorer
==============
Distance-from-baseline scoring of register snapshots.

  train()  → per-parameter mean μ and standard deviation σ over a frozen
             capture of historical points (numpy, population std)
  score()  → z_p = |x_p - μ_p| / max(σ_p, ε) for parameters present in both
             snapshot and baseline; z̄ = mean(z_p); score = 1 - exp(-z̄ / scale)

The score is 0 without a baseline and increases monotonically with the
distance of every parameter from its mean. An AnomalyEvent is recorded when
detection is enabled and `score > 1 - sensitivity`.
"""

import math
from datetime import datetime
from typing import Iterable, Optional

import numpy as np
from loguru import logger

from sim_config.ontology import AnomalyEvent, HistoricalDataPoint, MLAnomalyConfig

STD_FLOOR = 1e-6


class AnomalyScorer:
    def __init__(self, config: Optional[MLAnomalyConfig] = None, score_scale: float = 3.0):
        self.config = config or MLAnomalyConfig()
        self.score_scale = score_scale
        self.mean: dict[str, float] = {}
        self.std: dict[str, float] = {}
        if self.config.training_data:
            self._fit(self.config.training_data)

    @property
    def trained(self) -> bool:
        return bool(self.mean)

    @property
    def events(self) -> list[AnomalyEvent]:
        return self.config.detected_anomalies

    def bind(self, config: MLAnomalyConfig):
        """Follow a replaced configuration object (e.g. after an import)."""
        if config is self.config:
            return
        self.config = config
        self.mean, self.std = {}, {}
        if config.training_data:
            self._fit(config.training_data)

    def train(self, points: Iterable[HistoricalDataPoint]) -> int:
        """Replace the baseline with a fresh capture. Returns the number of points used."""
        capture = list(points)
        self.config.training_data = capture
        self._fit(capture)
        logger.info(f"Anomaly baseline trained on {len(capture)} points ({len(self.mean)} parameters)")
        return len(capture)

    def _fit(self, points: list[HistoricalDataPoint]):
        columns: dict[str, list[float]] = {}
        for point in points:
            for name, value in point.registers.items():
                if math.isfinite(value):
                    columns.setdefault(name, []).append(value)

        self.mean, self.std = {}, {}
        for name, values in columns.items():
            arr = np.asarray(values, dtype=float)
            self.mean[name] = float(arr.mean())
            self.std[name] = float(arr.std())

    def z_scores(self, registers: dict[str, float]) -> dict[str, float]:
        return {
            name: abs(value - self.mean[name]) / max(self.std[name], STD_FLOOR)
            for name, value in registers.items()
            if name in self.mean and math.isfinite(value)
        }

    def score(self, registers: dict[str, float]) -> float:
        z = self.z_scores(registers)
        if not z:
            return 0.0
        z_mean = float(np.mean(list(z.values())))
        return 1.0 - math.exp(-z_mean / self.score_scale)

    def observe(self, registers: dict[str, float], timestamp: datetime) -> tuple[float, Optional[AnomalyEvent]]:
        """Score a snapshot and record an event when it crosses the sensitivity threshold."""
        z = self.z_scores(registers)
        if not z:
            return 0.0, None

        z_mean = float(np.mean(list(z.values())))
        score = 1.0 - math.exp(-z_mean / self.score_scale)
        if not self.config.enabled or score <= 1.0 - self.config.sensitivity:
            return score, None

        flagged = sorted((name for name, value in z.items() if value >= z_mean), key=lambda n: -z[n])
        event = AnomalyEvent(timestamp=timestamp, score=score, parameters=flagged)
        self.config.detected_anomalies.append(event)
        logger.warning(f"Anomaly detected (score {score:.2f}): {', '.join(flagged)}")
        return score, event

    def clear(self):
        self.config.detected_anomalies.clear()
