"""
Simulation Engine — Tick Scheduler
===================================
Owns one device's simulation: the configuration store, a clock, the
component engines and the history buffer.

TICK PIPELINE (one tick, under the engine lock):
  1. Profile Generator     base values for profile-governed registers
  2. Interaction Resolver  source → target equations, declaration order
  3. Fault Engine          expire, detect trigger edges, perturb
  4. Communication         a lost update republishes the previous registers
  5. Sanitise              non-finite values are never published
  6. Alarm Engine          edge-triggered rules + action dispatch
  7. Anomaly Scorer        distance from the trained baseline
  8. History               append the completed snapshot

RUN MODES:
  step mode   step() runs exactly one tick; tick k happens at t = k × interval
  timer mode  run() ticks every `update_interval` seconds on the clock;
              run_in_background() does the same on a daemon thread

A tick whose elapsed time exceeds the profile duration does not run: the run
completes and stops. Configuration edits made between ticks apply to the
next tick.
"""

import copy
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from loguru import logger

from sim_config.errors import ConfigurationValidationError, EngineStateError
from sim_config.ontology import (
    AlarmRule, AnomalyEvent, DeviceStatus, HistoricalDataPoint, ParameterProfile, SimulationDevice,
)
from sim_config.store import ConfigurationStore, new_device
from .alarms import ActionDispatcher, ActionEvent, AlarmEngine, EmailSender, RuleCallback
from .anomaly import AnomalyScorer
from .communication import CommunicationChannel
from .expressions import ExpressionEvaluator
from .faults import FaultEngine
from .history import HistoryBuffer
from .interactions import InteractionResolver
from .profiles import ProfileGenerator


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  CLOCKS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class SystemClock:
    """Wall-clock timestamps, monotonic elapsed time, real sleeping."""

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float):
        time.sleep(seconds)


class FakeClock:
    """Virtual time for deterministic tests: sleep() advances instead of blocking."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1)
        self._elapsed = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._elapsed

    def advance(self, seconds: float):
        self._elapsed += seconds
        self._now += timedelta(seconds=seconds)

    def sleep(self, seconds: float):
        self.advance(seconds)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  CONFIGURATION
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class EngineConfig:
    """Engine tuning knobs."""
    update_interval: Optional[float] = None    # seconds; None → configuration's globalUpdateInterval
    step_mode: bool = False                    # manual step() instead of timer ticks
    seed: Optional[int] = None                 # seeds profile noise and packet loss

    # Profile shapes
    noise_sigma_fraction: float = 0.25         # σ = noise_level × span × this
    spike_width_fraction: float = 0.1          # transient-spike width as a share of duration
    cycle_period_seconds: float = 60.0         # cyclic profile period

    # Recording
    history_limit: Optional[int] = None        # keep only the newest N points; None → unbounded
    anomaly_score_scale: float = 3.0           # score = 1 - exp(-z̄ / scale)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ENGINE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class SimulationEngine:
    """
    Tick-based register simulator for a single device.

    Read API (safe from any thread): registers, last_point, active_fault_ids,
    active_alarm_ids, history, filtered_history(), anomalies, action_events,
    diagnostics, status, is_running, elapsed.

    Write API: store CRUD via `engine.store`, start/stop/step/run,
    trigger_fault, clear_faults, train, clear_anomalies, reset,
    set_step_mode, set_update_interval.
    """

    def __init__(self, store: Optional[ConfigurationStore] = None, config: Optional[EngineConfig] = None,
                 clock=None, device: Optional[SimulationDevice] = None,
                 email_sender: Optional[EmailSender] = None,
                 on_notification: Optional[RuleCallback] = None,
                 on_buzzer: Optional[RuleCallback] = None):
        self.store = store or ConfigurationStore()
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.device = device or new_device("Simulated PLC")

        if self.config.update_interval is None:
            self.config.update_interval = self.store.configuration.global_update_interval / 1000.0
        if self.config.update_interval <= 0:
            raise ConfigurationValidationError("update interval must be positive")

        evaluator = ExpressionEvaluator()
        self.generator = ProfileGenerator(
            seed=self.config.seed,
            noise_sigma_fraction=self.config.noise_sigma_fraction,
            spike_width_fraction=self.config.spike_width_fraction,
            cycle_period_seconds=self.config.cycle_period_seconds,
        )
        self.interactions = InteractionResolver(evaluator)
        self.faults = FaultEngine(evaluator)
        self.dispatcher = ActionDispatcher(email_sender=email_sender, on_notification=on_notification,
                                           on_buzzer=on_buzzer, on_shutdown=self._shutdown)
        self.alarms = AlarmEngine(self.dispatcher, evaluator)
        self.anomaly = AnomalyScorer(self.store.ml_config, score_scale=self.config.anomaly_score_scale)
        self.channel = CommunicationChannel(self.store.communication_config, seed=self.config.seed)
        self.history_buffer = HistoryBuffer(self.config.history_limit)

        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._profile: Optional[ParameterProfile] = None
        self._initial_registers = dict(self.device.registers)
        self._registers = dict(self.device.registers)
        self._running = False
        self._halted = False
        self._run_start = self.clock.now()
        self._timer_origin = 0.0
        self._tick_index = 0
        self._elapsed = 0.0

    # ── Read API ────────────────────────────────────

    @property
    def registers(self) -> dict[str, float]:
        return dict(self._registers)

    @property
    def last_point(self) -> Optional[HistoricalDataPoint]:
        return self.history_buffer.latest

    @property
    def active_fault_ids(self) -> list[str]:
        return self.faults.active_ids()

    @property
    def active_alarm_ids(self) -> list[str]:
        return self.alarms.active_ids()

    @property
    def history(self) -> tuple[HistoricalDataPoint, ...]:
        return self.history_buffer.points()

    def filtered_history(self, time_range: str = "all", now: Optional[datetime] = None) -> list[HistoricalDataPoint]:
        return self.history_buffer.filter_range(time_range, now)

    @property
    def anomalies(self) -> list[AnomalyEvent]:
        return list(self.anomaly.events)

    @property
    def action_events(self) -> list[ActionEvent]:
        return list(self.dispatcher.events)

    @property
    def diagnostics(self) -> dict[str, dict[str, str]]:
        return {
            "interactions": dict(self.interactions.diagnostics),
            "faults": dict(self.faults.diagnostics),
            "alarms": dict(self.alarms.diagnostics),
        }

    @property
    def status(self) -> DeviceStatus:
        return self.device.status

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_halted(self) -> bool:
        return self._halted

    @property
    def elapsed(self) -> float:
        return self._elapsed

    @property
    def profile(self) -> Optional[ParameterProfile]:
        return self._profile

    # ── Run control ─────────────────────────────────

    def start(self, profile: Union[ParameterProfile, str, None] = None):
        """Begin a new run; stops any current run and clears runtime state and history."""
        if self._halted:
            raise EngineStateError("engine halted by a shutdown action; call reset() first")
        resolved = self._resolve_profile(profile)
        self.stop()

        with self._lock:
            self._profile = copy.deepcopy(resolved)
            self.faults.reset()
            self.alarms.reset()
            self.history_buffer.clear()
            self.generator.reseed(self.config.seed)
            self.channel.reseed(self.config.seed)
            self._registers = dict(self._initial_registers)
            self._run_start = self.clock.now()
            self._tick_index = 0
            self._elapsed = 0.0
            self._running = True
            self.device.status = DeviceStatus.ONLINE

        mode = "step" if self.config.step_mode else f"timer, {self.config.update_interval:g}s"
        logger.info(f"Run started: profile '{self._profile.name or self._profile.id}' "
                    f"({self._profile.type.value}, {self._profile.duration:g}s, {mode} mode)")

    def _resolve_profile(self, profile: Union[ParameterProfile, str, None]) -> ParameterProfile:
        if isinstance(profile, ParameterProfile):
            return profile.validate()
        if isinstance(profile, str):
            found = self.store.get_profile(profile)
            if found is None:
                raise EngineStateError(f"unknown profile '{profile}'")
            return found.validate()
        if self._profile is None:
            raise EngineStateError("no profile selected")
        return self._profile

    def stop(self):
        """Cooperative stop: an in-flight tick completes, no further tick starts."""
        was_running = self._running
        self._running = False
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(5.0, 2 * self.config.update_interval))
            self._thread = None
        if was_running:
            logger.info(f"Run stopped at t={self._elapsed:.1f}s after {self._tick_index} ticks")

    def step(self) -> Optional[HistoricalDataPoint]:
        """Run exactly one tick (step mode). Returns None when the run has just completed."""
        if not self.config.step_mode:
            raise EngineStateError("step() requires step mode")
        if self._halted:
            raise EngineStateError("engine halted by a shutdown action; call reset() first")
        if not self._running:
            raise EngineStateError("no active run; call start() first")

        if self._tick_index == 0:
            t = 0.0
        else:
            t = max(self._tick_index * self.config.update_interval, self._elapsed + self.config.update_interval)
        return self._advance(t)

    def run(self, max_ticks: Optional[int] = None) -> int:
        """Timer loop: tick, then sleep one update interval on the clock. Returns ticks run."""
        if self.config.step_mode:
            raise EngineStateError("run() is not available in step mode; use step()")
        if not self._running:
            raise EngineStateError("no active run; call start() first")

        next_t = 0.0 if self._tick_index == 0 else self._elapsed + self.config.update_interval
        self._timer_origin = self.clock.monotonic() - next_t

        ticks = 0
        while self._running and not self.config.step_mode:
            if max_ticks is not None and ticks >= max_ticks:
                break
            t = self.clock.monotonic() - self._timer_origin
            if self._advance(t) is None:
                break
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            self.clock.sleep(self.config.update_interval)
        return ticks

    def run_in_background(self, max_ticks: Optional[int] = None) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            raise EngineStateError("timer loop already running")
        if not self._running:
            raise EngineStateError("no active run; call start() first")
        self._thread = threading.Thread(target=self.run, args=(max_ticks,),
                                        name=f"sim-{self.device.id}", daemon=True)
        self._thread.start()
        return self._thread

    def reset(self):
        """Stop, clear a shutdown halt and return registers to their initial values."""
        self.stop()
        with self._lock:
            self._halted = False
            self.faults.reset()
            self.alarms.reset()
            self.history_buffer.clear()
            self._registers = dict(self._initial_registers)
            self.device.registers = dict(self._initial_registers)
            self.device.status = DeviceStatus.OFFLINE
            self._tick_index = 0
            self._elapsed = 0.0
        logger.info(f"Engine for '{self.device.name or self.device.id}' reset")

    # ── Settings ────────────────────────────────────

    def set_step_mode(self, enabled: bool):
        self.config.step_mode = bool(enabled)
        logger.info(f"Step mode {'enabled' if enabled else 'disabled'}")

    def set_update_interval(self, seconds: float):
        if not (isinstance(seconds, (int, float)) and math.isfinite(seconds) and seconds > 0):
            raise ConfigurationValidationError(f"update interval must be a positive number, got {seconds!r}")
        self.config.update_interval = float(seconds)
        self.store.configuration.global_update_interval = max(1, round(seconds * 1000))
        logger.info(f"Update interval set to {seconds:g}s")

    # ── Faults & anomalies ──────────────────────────

    def trigger_fault(self, scenario_id: str) -> bool:
        """Manually activate a fault, bypassing its trigger and enabled flag."""
        scenario = self.store.get_fault_scenario(scenario_id)
        if scenario is None:
            raise ConfigurationValidationError(f"unknown fault scenario '{scenario_id}'")
        if not self._running:
            raise EngineStateError("faults can only be triggered during a run")
        with self._lock:
            return self.faults.activate(copy.deepcopy(scenario), self._elapsed, self._registers, manual=True)

    def clear_faults(self) -> list[str]:
        with self._lock:
            return self.faults.clear()

    def train(self, points: Optional[list[HistoricalDataPoint]] = None) -> int:
        """Capture a new anomaly baseline (defaults to the current history)."""
        capture = list(points) if points is not None else list(self.history_buffer.points())
        with self._lock:
            self.anomaly.bind(self.store.ml_config)
            return self.anomaly.train(copy.deepcopy(capture))

    def clear_anomalies(self):
        with self._lock:
            self.anomaly.clear()

    # ── Tick ────────────────────────────────────────

    def _advance(self, t: float) -> Optional[HistoricalDataPoint]:
        if t > self._profile.duration:
            self._complete()
            return None
        return self._tick(t)

    def _complete(self):
        self._running = False
        logger.info(f"Profile '{self._profile.name or self._profile.id}' completed "
                    f"after {self._tick_index} ticks ({self._elapsed:.1f}s)")

    def _tick(self, t: float) -> HistoricalDataPoint:
        with self._lock:
            view = self.store.tick_configuration()
            self.channel.config = view.communication
            self.anomaly.bind(self.store.ml_config)
            timestamp = self._run_start + timedelta(seconds=t)

            registers = dict(self._initial_registers)
            registers.update(self.generator.sample_profile(self._profile, t))
            registers = self.interactions.apply(registers, view.interactions)
            registers = self.faults.update(registers, view.fault_scenarios, t, timestamp)

            if not self.channel.transmit().delivered:
                registers = dict(self._registers)
            registers = self._sanitize(registers)

            self.alarms.evaluate(registers, view.alarm_rules, timestamp)
            score, _ = self.anomaly.observe(registers, timestamp)

            point = HistoricalDataPoint(
                timestamp=timestamp,
                registers=dict(registers),
                alarms=self.alarms.active_ids(),
                faults=self.faults.active_ids(),
                elapsed=t,
                anomaly_score=score,
            )
            self.history_buffer.append(point)

            self._registers = registers
            self.device.registers = dict(registers)
            self.device.last_update = timestamp
            if not self._halted:
                self.device.status = DeviceStatus.ONLINE
            self._tick_index += 1
            self._elapsed = t

        logger.debug(f"Tick {self._tick_index} t={t:.1f}s "
                     + ", ".join(f"{k}={v:.2f}" for k, v in registers.items()))
        return point

    def _sanitize(self, registers: dict[str, float]) -> dict[str, float]:
        """Replace non-finite values with the last published value, or drop them."""
        clean = {}
        for name, value in registers.items():
            if isinstance(value, (int, float)) and math.isfinite(value):
                clean[name] = float(value)
                continue
            previous = self._registers.get(name)
            logger.warning(f"Dropped non-finite value for '{name}' ({value!r})")
            if previous is not None and math.isfinite(previous):
                clean[name] = previous
        return clean

    def _shutdown(self, rule: AlarmRule):
        """Shutdown action hook: mark the device as failed and halt ticking."""
        self._halted = True
        self._running = False
        self.device.status = DeviceStatus.ERROR
        logger.critical(f"Device '{self.device.name or self.device.id}' shut down by alarm "
                        f"'{rule.name or rule.id}'; call reset() to resume")
