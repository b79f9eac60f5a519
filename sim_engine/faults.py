"""
Fault Engine
============
Per-scenario state machine:

    INACTIVE ──(trigger edge | manual trigger)──▶ ACTIVE
    ACTIVE ──(duration elapsed | manual clear)──▶ INACTIVE

Activation is edge-triggered: a trigger condition that stays true neither
re-activates nor extends a fault; after expiry the condition must go false
and true again. A fault activated at run time `a` is active while
`t - a < duration`.

PERTURBATIONS (deterministic, keyed by fault type, e = elapsed active time):
  overheating          additive   + min(2 + 0.5·e, 30)
  communication-error  additive   + 5·sin(2π·e / 4)
  sensor-failure       exclusive  frozen at the value seen on activation
  shutdown             exclusive  value × max(0, 1 - e/10)
  power-loss           exclusive  0

Additive deltas from concurrent faults sum. When an exclusive fault covers
a register, the most recently activated exclusive fault sets its value and
additive deltas are dropped for that register.
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from loguru import logger

from sim_config.errors import ExpressionError
from sim_config.ontology import FaultScenario, FaultType, RuntimeState
from .expressions import ExpressionEvaluator, default_evaluator

OVERHEAT_BASE = 2.0
OVERHEAT_RATE = 0.5            # per second active
OVERHEAT_MAX = 30.0
COMM_ERROR_AMPLITUDE = 5.0
COMM_ERROR_PERIOD = 4.0        # seconds
SHUTDOWN_RAMP_SECONDS = 10.0

EXCLUSIVE_FAULT_TYPES = frozenset({FaultType.SENSOR_FAILURE, FaultType.SHUTDOWN, FaultType.POWER_LOSS})


def additive_delta(fault_type: FaultType, elapsed_active: float) -> float:
    if fault_type == FaultType.OVERHEATING:
        return min(OVERHEAT_BASE + OVERHEAT_RATE * elapsed_active, OVERHEAT_MAX)
    if fault_type == FaultType.COMMUNICATION_ERROR:
        return COMM_ERROR_AMPLITUDE * math.sin(2 * math.pi * elapsed_active / COMM_ERROR_PERIOD)
    return 0.0


def exclusive_value(fault_type: FaultType, elapsed_active: float, value: float, frozen: float) -> float:
    if fault_type == FaultType.SENSOR_FAILURE:
        return frozen
    if fault_type == FaultType.SHUTDOWN:
        return value * max(0.0, 1.0 - elapsed_active / SHUTDOWN_RAMP_SECONDS)
    if fault_type == FaultType.POWER_LOSS:
        return 0.0
    return value


@dataclass
class FaultRuntime:
    """Runtime record for one scenario — never stored on the scenario itself."""
    scenario_id: str
    state: RuntimeState = RuntimeState.INACTIVE
    activated_at: Optional[float] = None       # run seconds
    activation_order: int = 0
    manual: bool = False
    condition_was_true: bool = False
    frozen: dict[str, float] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.state == RuntimeState.ACTIVE


class FaultEngine:
    """Trigger detection, activation/expiry lifecycle and register perturbation."""

    def __init__(self, evaluator: Optional[ExpressionEvaluator] = None):
        self.evaluator = evaluator or default_evaluator()
        self.runtimes: dict[str, FaultRuntime] = {}
        self.diagnostics: dict[str, str] = {}
        self.activations: list[tuple[str, float]] = []   # (scenario id, run time) log
        self._order = 0

    def reset(self):
        """Forget all runtime state (used when a new run starts)."""
        self.runtimes.clear()
        self.diagnostics = {}
        self.activations = []
        self._order = 0

    # ── Queries ──────────────────────────────────────

    def runtime(self, scenario_id: str) -> FaultRuntime:
        if scenario_id not in self.runtimes:
            self.runtimes[scenario_id] = FaultRuntime(scenario_id)
        return self.runtimes[scenario_id]

    def is_active(self, scenario_id: str) -> bool:
        rt = self.runtimes.get(scenario_id)
        return rt is not None and rt.active

    def active_ids(self) -> list[str]:
        active = [rt for rt in self.runtimes.values() if rt.active]
        return [rt.scenario_id for rt in sorted(active, key=lambda rt: rt.activation_order)]

    # ── Transitions ──────────────────────────────────

    def activate(self, scenario: FaultScenario, t: float, registers: dict[str, float],
                 manual: bool = False) -> bool:
        """INACTIVE → ACTIVE. Returns False when the fault is already active."""
        rt = self.runtime(scenario.id)
        if rt.active:
            return False
        self._order += 1
        rt.state = RuntimeState.ACTIVE
        rt.activated_at = t
        rt.activation_order = self._order
        rt.manual = manual
        rt.frozen = {p: registers[p] for p in scenario.affected_parameters if p in registers}
        self.activations.append((scenario.id, t))
        how = "manually" if manual else f"by '{scenario.trigger_condition}'"
        logger.info(f"Fault '{scenario.name or scenario.id}' ({scenario.type.value}) activated {how} at t={t:.1f}s")
        return True

    def deactivate(self, scenario_id: str, reason: str = "cleared"):
        rt = self.runtimes.get(scenario_id)
        if rt is None or not rt.active:
            return
        rt.state = RuntimeState.INACTIVE
        rt.activated_at = None
        rt.frozen = {}
        logger.info(f"Fault '{scenario_id}' {reason}")

    def clear(self) -> list[str]:
        """Manual clear: force every active fault to INACTIVE."""
        cleared = self.active_ids()
        for scenario_id in cleared:
            self.deactivate(scenario_id, "cleared manually")
        return cleared

    # ── Per-tick processing ──────────────────────────

    def update(self, registers: dict[str, float], scenarios: list[FaultScenario], t: float,
               timestamp: Optional[datetime] = None) -> dict[str, float]:
        """Expire, detect trigger edges, then return the perturbed registers."""
        by_id = {s.id: s for s in scenarios}
        previous, self.diagnostics = self.diagnostics, {}

        for scenario_id in [sid for sid in self.runtimes if sid not in by_id]:
            del self.runtimes[scenario_id]

        for rt in list(self.runtimes.values()):
            if rt.active and t - rt.activated_at >= by_id[rt.scenario_id].duration:
                self.deactivate(rt.scenario_id, f"expired at t={t:.1f}s")

        for scenario in scenarios:
            rt = self.runtime(scenario.id)
            if not scenario.enabled:
                rt.condition_was_true = False
                continue
            triggered = self._trigger_true(scenario, registers, timestamp, previous)
            rising_edge = triggered and not rt.condition_was_true
            rt.condition_was_true = triggered
            if rising_edge and not rt.active:
                self.activate(scenario, t, registers)

        return self.perturb(registers, by_id, t)

    def _trigger_true(self, scenario: FaultScenario, registers: dict[str, float],
                      timestamp: Optional[datetime], previous: dict[str, str]) -> bool:
        if scenario.scheduled_time is not None and timestamp is not None and timestamp >= scenario.scheduled_time:
            return True
        if not scenario.trigger_condition.strip():
            return False
        try:
            return self.evaluator.condition(scenario.trigger_condition, registers)
        except ExpressionError as exc:
            self.diagnostics[scenario.id] = str(exc)
            if previous.get(scenario.id) != str(exc):
                logger.warning(f"Fault trigger '{scenario.name or scenario.id}' treated as false: {exc}")
            return False

    def perturb(self, registers: dict[str, float], scenarios: dict[str, FaultScenario],
                t: float) -> dict[str, float]:
        result = dict(registers)
        deltas: dict[str, float] = defaultdict(float)
        exclusive: dict[str, float] = {}

        active = sorted((rt for rt in self.runtimes.values() if rt.active), key=lambda rt: rt.activation_order)
        for rt in active:
            scenario = scenarios.get(rt.scenario_id)
            if scenario is None:
                continue
            elapsed_active = max(0.0, t - rt.activated_at)
            for param in scenario.affected_parameters:
                if param not in registers:
                    continue
                if scenario.type in EXCLUSIVE_FAULT_TYPES:
                    frozen = rt.frozen.setdefault(param, registers[param])
                    exclusive[param] = exclusive_value(scenario.type, elapsed_active, registers[param], frozen)
                else:
                    deltas[param] += additive_delta(scenario.type, elapsed_active)

        for param, delta in deltas.items():
            if param not in exclusive:
                result[param] = registers[param] + delta
        result.update(exclusive)
        return result
