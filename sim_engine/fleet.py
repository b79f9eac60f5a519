"""
Device Fleet — one independent engine per simulated device.

Group operations fan out over the selected devices one by one. The fan-out is
not atomic: a device that fails is logged and reported in the returned
{device id: error} mapping while the remaining devices proceed.
"""

import copy
from dataclasses import replace
from typing import Callable, Optional, Union

from loguru import logger

from sim_config.errors import EngineStateError, SimulationError
from sim_config.ontology import DeviceStatus, ParameterProfile, SimulationDevice
from sim_config.store import ConfigurationStore
from .scheduler import EngineConfig, SimulationEngine


class DeviceFleet:
    def __init__(self, store: ConfigurationStore, engine_config: Optional[EngineConfig] = None,
                 clock=None, **engine_kwargs):
        self.store = store
        self.engine_config = engine_config or EngineConfig()
        self.clock = clock
        self.engine_kwargs = engine_kwargs
        self.engines: dict[str, SimulationEngine] = {}
        self.selected: list[str] = []
        for device in store.devices:
            self.add_device(device)

    # ── Membership ──────────────────────────────────

    def add_device(self, device: SimulationDevice) -> SimulationEngine:
        if device.id in self.engines:
            raise EngineStateError(f"device '{device.id}' already has an engine")
        private_store = ConfigurationStore(self.store.snapshot())
        own_device = private_store.get_device(device.id)
        if own_device is None:
            own_device = copy.deepcopy(device)
            private_store.save_device(own_device)
        engine = SimulationEngine(store=private_store, config=replace(self.engine_config),
                                  clock=self.clock, device=own_device, **self.engine_kwargs)
        self.engines[device.id] = engine
        logger.info(f"Fleet: added {device.type.value} '{device.name or device.id}'")
        return engine

    def remove_device(self, device_id: str) -> bool:
        engine = self.engines.pop(device_id, None)
        if engine is None:
            return False
        engine.stop()
        if device_id in self.selected:
            self.selected.remove(device_id)
        return True

    def engine(self, device_id: str) -> SimulationEngine:
        if device_id not in self.engines:
            raise EngineStateError(f"unknown device '{device_id}'")
        return self.engines[device_id]

    @property
    def devices(self) -> list[SimulationDevice]:
        return [engine.device for engine in self.engines.values()]

    # ── Selection ───────────────────────────────────

    def select(self, device_id: str):
        self.engine(device_id)
        if device_id not in self.selected:
            self.selected.append(device_id)

    def deselect(self, device_id: str):
        if device_id in self.selected:
            self.selected.remove(device_id)

    def select_all(self):
        self.selected = list(self.engines)

    def clear_selection(self):
        self.selected = []

    def toggle_status(self, device_id: str) -> DeviceStatus:
        """online ↔ offline; taking a device offline stops its run. A shut-down device stays in error until reset."""
        engine = self.engine(device_id)
        if engine.is_halted:
            raise EngineStateError(f"device '{device_id}' was shut down by an alarm; reset it first")
        if engine.device.status == DeviceStatus.ONLINE:
            engine.stop()
            engine.device.status = DeviceStatus.OFFLINE
        else:
            engine.device.status = DeviceStatus.ONLINE
        logger.info(f"Fleet: '{engine.device.name or device_id}' is now {engine.device.status.value}")
        return engine.device.status

    # ── Group control ───────────────────────────────

    def start_group(self, profile: Union[ParameterProfile, str, None] = None) -> dict[str, str]:
        return self._fan_out("start", lambda engine: engine.start(profile))

    def stop_group(self) -> dict[str, str]:
        return self._fan_out("stop", lambda engine: engine.stop())

    def step_group(self) -> dict[str, str]:
        return self._fan_out("step", lambda engine: engine.step())

    def reset_group(self) -> dict[str, str]:
        return self._fan_out("reset", lambda engine: engine.reset())

    def _fan_out(self, operation: str, action: Callable[[SimulationEngine], object]) -> dict[str, str]:
        if not self.selected:
            logger.warning(f"Fleet: {operation} requested with no devices selected")
            return {}

        errors: dict[str, str] = {}
        for device_id in list(self.selected):
            engine = self.engines.get(device_id)
            if engine is None:
                errors[device_id] = "unknown device"
                continue
            try:
                action(engine)
            except SimulationError as exc:
                errors[device_id] = str(exc)
                logger.error(f"Fleet: {operation} failed for '{engine.device.name or device_id}': {exc}")

        done = len(self.selected) - len(errors)
        logger.info(f"Fleet: {operation} completed on {done}/{len(self.selected)} devices")
        return errors
