"""
Simulation Configuration — Store & Defaults
============================================
In-memory home of the editable simulation configuration.

  ConfigurationStore          CRUD over profiles, interactions, fault
                              scenarios, alarm rules and devices; JSON
                              import/export (canonical) and XML export (lossy)
  DefaultConfigurationBuilder populates a store with the stock profiles,
                              interactions, faults, alarm rules and devices
                              a fresh simulator starts with

Edits are guarded by a lock so a running engine can snapshot the
configuration between ticks while a UI thread edits it.
"""

import copy
import json
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, TypeVar

from loguru import logger

from .errors import ConfigurationValidationError
from .ontology import (
    SimulationConfiguration, ParameterProfile, ParameterRange, ParameterInteraction,
    FaultScenario, AlarmRule, AlarmAction, SimulationDevice, MLAnomalyConfig,
    CommunicationConfig, ProfileType, FaultType, AlarmSeverity, ActionType,
    DeviceType, DeviceStatus,
)

NEW_DEVICE_REGISTERS = {"temperature": 25.0, "power": 0.0, "vibration": 0.0, "speed": 0.0}

ALARM_CONDITION_PRESETS = [
    "temperature > 75",
    "power > 95",
    "vibration > 4.5",
    "temperature > 70 && vibration > 3",
    "power > 90 || temperature > 80",
    "speed > 2000 && power < 50",
]

INTERACTION_PRESETS = {
    "Linear Increase": "target = source * 1.2 + 5",
    "Inverse Relationship": "target = 100 - source",
    "Proportional": "target = source * 0.8",
    "Temperature to Power": "target = (source - 20) * 2 + 50",
    "Speed to Vibration": "target = source / 500",
}

T = TypeVar("T")


@dataclass
class TickConfiguration:
    """Private copies of everything a running engine reads during one tick."""
    interactions: list[ParameterInteraction]
    fault_scenarios: list[FaultScenario]
    alarm_rules: list[AlarmRule]
    communication: CommunicationConfig


class ConfigurationStore:
    """
    Holds one SimulationConfiguration and exposes upsert/remove per entity.

    Saving an entity whose id already exists replaces it in place (keeping
    its position, which matters for interaction ordering); a new id is
    appended.
    """

    def __init__(self, configuration: Optional[SimulationConfiguration] = None):
        self.configuration = configuration or SimulationConfiguration()
        self._lock = threading.RLock()

    # ── Read access ─────────────────────────────────

    @property
    def profiles(self) -> list[ParameterProfile]:
        return self.configuration.profiles

    @property
    def interactions(self) -> list[ParameterInteraction]:
        return self.configuration.interactions

    @property
    def fault_scenarios(self) -> list[FaultScenario]:
        return self.configuration.fault_scenarios

    @property
    def alarm_rules(self) -> list[AlarmRule]:
        return self.configuration.alarm_rules

    @property
    def devices(self) -> list[SimulationDevice]:
        return self.configuration.devices

    @property
    def ml_config(self) -> MLAnomalyConfig:
        return self.configuration.ml_config

    @property
    def communication_config(self) -> CommunicationConfig:
        return self.configuration.communication_config

    def get_profile(self, profile_id: str) -> Optional[ParameterProfile]:
        return self._find(self.profiles, profile_id)

    def get_interaction(self, interaction_id: str) -> Optional[ParameterInteraction]:
        return self._find(self.interactions, interaction_id)

    def get_fault_scenario(self, scenario_id: str) -> Optional[FaultScenario]:
        return self._find(self.fault_scenarios, scenario_id)

    def get_alarm_rule(self, rule_id: str) -> Optional[AlarmRule]:
        return self._find(self.alarm_rules, rule_id)

    def get_device(self, device_id: str) -> Optional[SimulationDevice]:
        return self._find(self.devices, device_id)

    def snapshot(self) -> SimulationConfiguration:
        """Deep copy of the whole configuration; later edits do not leak into it."""
        with self._lock:
            return copy.deepcopy(self.configuration)

    def tick_configuration(self) -> TickConfiguration:
        with self._lock:
            cfg = self.configuration
            return TickConfiguration(
                interactions=copy.deepcopy(cfg.interactions),
                fault_scenarios=copy.deepcopy(cfg.fault_scenarios),
                alarm_rules=copy.deepcopy(cfg.alarm_rules),
                communication=copy.deepcopy(cfg.communication_config),
            )

    # ── Mutation ────────────────────────────────────

    def save_profile(self, profile: ParameterProfile) -> str:
        profile.validate()
        return self._upsert(self.profiles, profile, "profile")

    def save_interaction(self, interaction: ParameterInteraction) -> str:
        return self._upsert(self.interactions, interaction, "interaction")

    def save_fault_scenario(self, scenario: FaultScenario) -> str:
        if scenario.duration < 0:
            raise ConfigurationValidationError(f"fault scenario '{scenario.id}': duration must not be negative")
        return self._upsert(self.fault_scenarios, scenario, "fault scenario")

    def save_alarm_rule(self, rule: AlarmRule) -> str:
        return self._upsert(self.alarm_rules, rule, "alarm rule")

    def save_device(self, device: SimulationDevice) -> str:
        return self._upsert(self.devices, device, "device")

    def remove_profile(self, profile_id: str) -> bool:
        return self._remove(self.profiles, profile_id, "profile")

    def remove_interaction(self, interaction_id: str) -> bool:
        return self._remove(self.interactions, interaction_id, "interaction")

    def remove_fault_scenario(self, scenario_id: str) -> bool:
        return self._remove(self.fault_scenarios, scenario_id, "fault scenario")

    def remove_alarm_rule(self, rule_id: str) -> bool:
        return self._remove(self.alarm_rules, rule_id, "alarm rule")

    def remove_device(self, device_id: str) -> bool:
        return self._remove(self.devices, device_id, "device")

    def set_ml_config(self, ml_config: MLAnomalyConfig):
        if not 0.1 <= ml_config.sensitivity <= 1.0:
            raise ConfigurationValidationError("mlConfig.sensitivity must be within [0.1, 1]")
        with self._lock:
            self.configuration.ml_config = ml_config

    def set_communication_config(self, config: CommunicationConfig):
        if not 0.0 <= config.packet_loss <= 100.0:
            raise ConfigurationValidationError("communicationConfig.packetLoss must be within [0, 100]")
        with self._lock:
            self.configuration.communication_config = config

    def load(self, configuration: SimulationConfiguration):
        """Replace the whole configuration (used by import)."""
        with self._lock:
            self.configuration = configuration
        logger.info(f"Configuration '{configuration.name}' loaded ({self.stats()['total_entities']} entities)")

    @staticmethod
    def _find(items: list[T], entity_id: str) -> Optional[T]:
        for item in items:
            if item.id == entity_id:
                return item
        return None

    def _upsert(self, items: list, entity, kind: str) -> str:
        with self._lock:
            for index, item in enumerate(items):
                if item.id == entity.id:
                    items[index] = entity
                    logger.debug(f"Updated {kind} '{entity.id}'")
                    return entity.id
            items.append(entity)
            logger.debug(f"Added {kind} '{entity.id}'")
            return entity.id

    def _remove(self, items: list, entity_id: str, kind: str) -> bool:
        with self._lock:
            for index, item in enumerate(items):
                if item.id == entity_id:
                    del items[index]
                    logger.debug(f"Removed {kind} '{entity_id}'")
                    return True
        return False

    # ── Statistics ───────────────────────────────────

    def stats(self) -> dict:
        cfg = self.configuration
        counts = {
            "profiles": len(cfg.profiles),
            "interactions": len(cfg.interactions),
            "fault_scenarios": len(cfg.fault_scenarios),
            "alarm_rules": len(cfg.alarm_rules),
            "devices": len(cfg.devices),
        }
        counts["total_entities"] = sum(counts.values())
        counts["training_points"] = len(cfg.ml_config.training_data)
        counts["detected_anomalies"] = len(cfg.ml_config.detected_anomalies)
        return counts

    # ── Import / Export ─────────────────────────────

    def export_json(self, filepath: Optional[str] = None) -> str:
        """Canonical configuration document; written to `filepath` when given."""
        with self._lock:
            text = json.dumps(self.configuration.to_dict(), indent=2)
        if filepath:
            Path(filepath).write_text(text, encoding="utf-8")
            logger.info(f"Configuration exported to {filepath}")
        return text

    def import_json(self, text: str) -> SimulationConfiguration:
        """
        Parse and validate a JSON document, then swap it in. On any failure a
        ConfigurationValidationError is raised and the current configuration
        is left untouched.
        """
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ConfigurationValidationError(f"configuration is not valid JSON: {exc}") from exc
        configuration = SimulationConfiguration.from_dict(data)
        self.load(configuration)
        return configuration

    def import_file(self, filepath: str) -> SimulationConfiguration:
        try:
            text = Path(filepath).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationValidationError(f"cannot read configuration file {filepath}: {exc}") from exc
        return self.import_json(text)

    def export_xml(self, filepath: Optional[str] = None) -> str:
        """
        Lossy XML summary: document header, profiles (without parameter
        envelopes) and interactions. There is no XML import.
        """
        with self._lock:
            cfg = copy.deepcopy(self.configuration)

        root = ET.Element("SimulationConfiguration")
        ET.SubElement(root, "Id").text = cfg.id
        ET.SubElement(root, "Name").text = cfg.name
        ET.SubElement(root, "Description").text = cfg.description
        ET.SubElement(root, "CreatedAt").text = cfg.created_at.isoformat()
        ET.SubElement(root, "GlobalUpdateInterval").text = str(cfg.global_update_interval)

        profiles = ET.SubElement(root, "Profiles")
        for p in cfg.profiles:
            node = ET.SubElement(profiles, "Profile")
            ET.SubElement(node, "Id").text = p.id
            ET.SubElement(node, "Name").text = p.name
            ET.SubElement(node, "Type").text = p.type.value
            ET.SubElement(node, "Duration").text = f"{p.duration:g}"
            ET.SubElement(node, "NoiseLevel").text = f"{p.noise_level:g}"

        interactions = ET.SubElement(root, "Interactions")
        for i in cfg.interactions:
            node = ET.SubElement(interactions, "Interaction")
            ET.SubElement(node, "Id").text = i.id
            ET.SubElement(node, "Name").text = i.name
            ET.SubElement(node, "SourceParameter").text = i.source_parameter
            ET.SubElement(node, "TargetParameter").text = i.target_parameter
            ET.SubElement(node, "Equation").text = i.equation
            ET.SubElement(node, "Enabled").text = "true" if i.enabled else "false"

        ET.indent(root, space="  ")
        text = '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode")
        if filepath:
            Path(filepath).write_text(text, encoding="utf-8")
            logger.info(f"Configuration XML exported to {filepath}")
        return text


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  DEFAULT CONFIGURATION
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def new_device(name: str = "New Device", device_type: DeviceType = DeviceType.PLC,
               device_id: Optional[str] = None) -> SimulationDevice:
    device = SimulationDevice(name=name, type=device_type, registers=dict(NEW_DEVICE_REGISTERS),
                              status=DeviceStatus.OFFLINE, last_update=datetime.now())
    if device_id:
        device.id = device_id
    return device


class DefaultConfigurationBuilder:
    """
    Populates a ConfigurationStore with the stock simulator setup:
    - Startup / normal operation / load spike profiles
    - Coupling equations between speed, vibration, temperature and power
    - Sensor, overheating and power-loss fault scenarios
    - Threshold alarm rules with notification, buzzer and email actions
    - One PLC, one drive and one sensor module
    """

    def __init__(self, store: Optional[ConfigurationStore] = None):
        self.store = store or ConfigurationStore()

    def build(self) -> ConfigurationStore:
        logger.info("Building default simulation configuration...")

        cfg = self.store.configuration
        cfg.id = "default"
        cfg.name = "Default Simulation"
        cfg.description = "Stock profiles, interactions, faults and alarm rules"
        cfg.global_update_interval = 1000

        self._build_profiles()
        self._build_interactions()
        self._build_fault_scenarios()
        self._build_alarm_rules()
        self._build_devices()

        stats = self.store.stats()
        logger.info(f"Default configuration built: {stats['profiles']} profiles, "
                    f"{stats['interactions']} interactions, {stats['fault_scenarios']} faults, "
                    f"{stats['alarm_rules']} alarm rules, {stats['devices']} devices")
        return self.store

    # ── Profiles ────────────────────────────────────

    def _build_profiles(self):
        s = self.store
        s.save_profile(ParameterProfile(
            id="startup", name="System Startup", type=ProfileType.RAMP_UP, duration=300,
            parameters={
                "temperature": ParameterRange(20, 45, [0, 0.3, 0.7, 1]),
                "power": ParameterRange(10, 80, [0, 0.2, 0.8, 1]),
                "speed": ParameterRange(0, 1500, [0, 0.1, 0.6, 1]),
            },
            noise_level=0.1,
        ))
        s.save_profile(ParameterProfile(
            id="normal-operation", name="Normal Operation", type=ProfileType.STEADY_STATE, duration=3600,
            parameters={
                "temperature": ParameterRange(40, 50, [1]),
                "power": ParameterRange(70, 90, [1]),
                "vibration": ParameterRange(1, 3, [1]),
            },
            noise_level=0.05,
        ))
        s.save_profile(ParameterProfile(
            id="load-spike", name="Load Spike", type=ProfileType.TRANSIENT_SPIKE, duration=60,
            parameters={
                "power": ParameterRange(80, 120, [1, 1.5, 1.2, 1]),
                "temperature": ParameterRange(45, 65, [1, 1.3, 1.1, 1]),
            },
            noise_level=0.2,
        ))

    # ── Interactions ────────────────────────────────

    def _build_interactions(self):
        s = self.store
        s.save_interaction(ParameterInteraction(
            id="speed-vibration", name="Speed to Vibration",
            source_parameter="speed", target_parameter="vibration",
            equation=INTERACTION_PRESETS["Speed to Vibration"],
        ))
        s.save_interaction(ParameterInteraction(
            id="temperature-power", name="Temperature to Power",
            source_parameter="temperature", target_parameter="power",
            equation=INTERACTION_PRESETS["Temperature to Power"], enabled=False,
        ))

    # ── Faults ──────────────────────────────────────

    def _build_fault_scenarios(self):
        s = self.store
        s.save_fault_scenario(FaultScenario(
            id="temperature-sensor-failure", name="Temperature Sensor Failure",
            type=FaultType.SENSOR_FAILURE, trigger_condition="temperature > 80",
            duration=60, affected_parameters=["temperature"],
        ))
        s.save_fault_scenario(FaultScenario(
            id="overload-overheating", name="Overload Overheating",
            type=FaultType.OVERHEATING, trigger_condition="power > 110",
            duration=120, affected_parameters=["temperature"],
        ))
        s.save_fault_scenario(FaultScenario(
            id="supply-power-loss", name="Supply Power Loss",
            type=FaultType.POWER_LOSS, trigger_condition="",
            duration=30, affected_parameters=["power", "speed"],
        ))

    # ── Alarm Rules ─────────────────────────────────

    def _build_alarm_rules(self):
        s = self.store
        s.save_alarm_rule(AlarmRule(
            id="high-temperature", name="High Temperature",
            condition=ALARM_CONDITION_PRESETS[0], severity=AlarmSeverity.WARNING,
            actions=[AlarmAction(ActionType.NOTIFICATION), AlarmAction(ActionType.BUZZER)],
        ))
        s.save_alarm_rule(AlarmRule(
            id="power-overload", name="Power Overload",
            condition=ALARM_CONDITION_PRESETS[1], severity=AlarmSeverity.WARNING,
            actions=[AlarmAction(ActionType.NOTIFICATION)],
        ))
        s.save_alarm_rule(AlarmRule(
            id="excessive-vibration", name="Excessive Vibration",
            condition=ALARM_CONDITION_PRESETS[2], severity=AlarmSeverity.WARNING,
            actions=[AlarmAction(ActionType.NOTIFICATION)],
        ))
        s.save_alarm_rule(AlarmRule(
            id="thermal-runaway", name="Thermal Runaway",
            condition=ALARM_CONDITION_PRESETS[4], severity=AlarmSeverity.CRITICAL,
            actions=[
                AlarmAction(ActionType.NOTIFICATION),
                AlarmAction(ActionType.EMAIL, {"to": "maintenance@example.com"}),
                AlarmAction(ActionType.BUZZER),
            ],
        ))

    # ── Devices ─────────────────────────────────────

    def _build_devices(self):
        s = self.store
        s.save_device(new_device("Main PLC", DeviceType.PLC, "plc-01"))
        s.save_device(new_device("Conveyor Drive", DeviceType.DRIVE, "drive-01"))
        s.save_device(new_device("Sensor Module", DeviceType.SENSOR, "sensor-01"))
