"""
Simulation Configuration — Ontology & Schema
=============================================
Defines the complete data model shared by the configuration store and the
simulation engine:

ENTITIES:
  ParameterProfile      → scripted base-value patterns for a run
  ParameterInteraction  → source → target dependency equations
  FaultScenario         → conditionally triggered, time-bounded perturbations
  AlarmRule             → boolean conditions with ordered actions
  HistoricalDataPoint   → one recorded tick (registers + active ids)
  MLAnomalyConfig       → frozen baseline + detected anomaly events
  CommunicationConfig   → simulated link quality (latency / loss / jitter)
  SimulationDevice      → a PLC / drive / sensor owning a register set
  SimulationConfiguration → the importable / exportable document

WIRE FORMAT:
  Every entity serialises to the camelCase JSON document used by the
  configuration import/export (`to_dict` / `from_dict`). Enumerations are
  `str` enums so their values are the wire values.
"""

from __future__ import annotations
import math
import uuid
from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import ConfigurationValidationError


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ENUMERATIONS — Controlled Vocabularies
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class ProfileType(str, Enum):
    """How a profile shapes base register values over a run."""
    RAMP_UP = "ramp-up"
    STEADY_STATE = "steady-state"
    TRANSIENT_SPIKE = "transient-spike"
    CYCLIC = "cyclic"
    CUSTOM = "custom"


class FaultType(str, Enum):
    SENSOR_FAILURE = "sensor-failure"
    COMMUNICATION_ERROR = "communication-error"
    OVERHEATING = "overheating"
    SHUTDOWN = "shutdown"
    POWER_LOSS = "power-loss"


class AlarmSeverity(str, Enum):
    """UI urgency only — never affects evaluation."""
    WARNING = "warning"
    CRITICAL = "critical"


class ActionType(str, Enum):
    NOTIFICATION = "notification"
    EMAIL = "email"
    BUZZER = "buzzer"
    SHUTDOWN = "shutdown"


class DeviceType(str, Enum):
    PLC = "PLC"
    DRIVE = "Drive"
    SENSOR = "Sensor"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


class RuntimeState(str, Enum):
    """Runtime status of a fault scenario or alarm rule."""
    INACTIVE = "inactive"
    ACTIVE = "active"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  PARSING HELPERS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

_MISSING = object()


def _uid() -> str:
    return uuid.uuid4().hex[:12]


def _field(data: Any, key: str, entity: str, default: Any = _MISSING) -> Any:
    if not isinstance(data, dict):
        raise ConfigurationValidationError(f"{entity} must be an object, got {type(data).__name__}")
    if key in data and data[key] is not None:
        return data[key]
    if default is _MISSING:
        raise ConfigurationValidationError(f"{entity} is missing required field '{key}'")
    return default


def _finite(value: Any, what: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationValidationError(f"{what} must be a number, got a boolean")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationValidationError(f"{what} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise ConfigurationValidationError(f"{what} must be finite, got {value!r}")
    return number


def _bool(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationValidationError(f"{what} must be true or false, got {value!r}")
    return value


def _enum(enum_cls, value: Any, what: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationValidationError(f"{what} must be one of [{allowed}], got {value!r}") from exc


def _list(value: Any, what: str) -> list:
    if not isinstance(value, list):
        raise ConfigurationValidationError(f"{what} must be a list")
    return value


def _datetime(value: Any, what: str) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise ConfigurationValidationError(f"{what} is not an ISO timestamp: {value!r}") from exc


def _registers(value: Any, what: str) -> dict[str, float]:
    if not isinstance(value, dict):
        raise ConfigurationValidationError(f"{what} must be an object of parameter → number")
    return {str(name): _finite(v, f"{what}.{name}") for name, v in value.items()}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  PROFILES & INTERACTIONS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class ParameterRange:
    """Envelope and pattern weights for one profile-governed parameter."""
    min_value: float = 0.0
    max_value: float = 100.0
    pattern: list[float] = field(default_factory=lambda: [1.0])

    @property
    def span(self) -> float:
        return self.max_value - self.min_value

    def to_dict(self) -> dict:
        return {"min": self.min_value, "max": self.max_value, "pattern": list(self.pattern)}

    @classmethod
    def from_dict(cls, data: dict, what: str = "parameter") -> "ParameterRange":
        rng = cls(
            min_value=_finite(_field(data, "min", what), f"{what}.min"),
            max_value=_finite(_field(data, "max", what), f"{what}.max"),
            pattern=[_finite(w, f"{what}.pattern") for w in _list(_field(data, "pattern", what, []), f"{what}.pattern")],
        )
        if rng.min_value > rng.max_value:
            raise ConfigurationValidationError(f"{what}: min ({rng.min_value}) is greater than max ({rng.max_value})")
        return rng


@dataclass
class ParameterProfile:
    """A scripted pattern describing how base register values evolve over a run."""
    id: str = field(default_factory=_uid)
    name: str = ""
    type: ProfileType = ProfileType.STEADY_STATE
    duration: float = 60.0                     # seconds
    parameters: dict[str, ParameterRange] = field(default_factory=dict)
    noise_level: float = 0.0                   # 0-1 scale of the parameter span

    def validate(self) -> "ParameterProfile":
        what = f"profile '{self.id}'"
        if _finite(self.duration, f"{what}.duration") <= 0:
            raise ConfigurationValidationError(f"{what}: duration must be positive")
        if not 0.0 <= _finite(self.noise_level, f"{what}.noiseLevel") <= 1.0:
            raise ConfigurationValidationError(f"{what}: noiseLevel must be within [0, 1]")
        for name, rng in self.parameters.items():
            _finite(rng.min_value, f"{what}.{name}.min")
            _finite(rng.max_value, f"{what}.{name}.max")
            if rng.min_value > rng.max_value:
                raise ConfigurationValidationError(f"{what}.{name}: min is greater than max")
        return self

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "duration": self.duration,
            "parameters": {name: rng.to_dict() for name, rng in self.parameters.items()},
            "noiseLevel": self.noise_level,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ParameterProfile":
        pid = str(_field(data, "id", "profile"))
        what = f"profile '{pid}'"
        params = _field(data, "parameters", what, {})
        if not isinstance(params, dict):
            raise ConfigurationValidationError(f"{what}.parameters must be an object")
        return cls(
            id=pid,
            name=str(_field(data, "name", what, "")),
            type=_enum(ProfileType, _field(data, "type", what), f"{what}.type"),
            duration=_finite(_field(data, "duration", what), f"{what}.duration"),
            parameters={name: ParameterRange.from_dict(cfg, f"{what}.{name}")
                        for name, cfg in params.items() if cfg is not None},
            noise_level=_finite(_field(data, "noiseLevel", what, 0.0), f"{what}.noiseLevel"),
        ).validate()


@dataclass
class ParameterInteraction:
    """Derived dependency: target register computed from source via an equation."""
    id: str = field(default_factory=_uid)
    name: str = ""
    source_parameter: str = ""
    target_parameter: str = ""
    equation: str = "source"                   # e.g. "target = source * 1.2 + 10"
    enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sourceParameter": self.source_parameter,
            "targetParameter": self.target_parameter,
            "equation": self.equation,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ParameterInteraction":
        iid = str(_field(data, "id", "interaction"))
        what = f"interaction '{iid}'"
        return cls(
            id=iid,
            name=str(_field(data, "name", what, "")),
            source_parameter=str(_field(data, "sourceParameter", what)),
            target_parameter=str(_field(data, "targetParameter", what)),
            equation=str(_field(data, "equation", what)),
            enabled=_bool(_field(data, "enabled", what, True), f"{what}.enabled"),
        )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  FAULTS & ALARMS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class FaultScenario:
    """Conditionally triggered, time-bounded perturbation of registers."""
    id: str = field(default_factory=_uid)
    name: str = ""
    type: FaultType = FaultType.SENSOR_FAILURE
    trigger_condition: str = ""                # empty → manual trigger only
    duration: float = 60.0                     # seconds
    affected_parameters: list[str] = field(default_factory=list)
    enabled: bool = True
    scheduled_time: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "triggerCondition": self.trigger_condition,
            "duration": self.duration,
            "affectedParameters": list(self.affected_parameters),
            "enabled": self.enabled,
        }
        if self.scheduled_time is not None:
            data["scheduledTime"] = self.scheduled_time.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FaultScenario":
        fid = str(_field(data, "id", "fault scenario"))
        what = f"fault scenario '{fid}'"
        duration = _finite(_field(data, "duration", what), f"{what}.duration")
        if duration < 0:
            raise ConfigurationValidationError(f"{what}: duration must not be negative")
        scheduled = _field(data, "scheduledTime", what, None)
        return cls(
            id=fid,
            name=str(_field(data, "name", what, "")),
            type=_enum(FaultType, _field(data, "type", what), f"{what}.type"),
            trigger_condition=str(_field(data, "triggerCondition", what, "")),
            duration=duration,
            affected_parameters=[str(p) for p in _list(_field(data, "affectedParameters", what, []),
                                                       f"{what}.affectedParameters")],
            enabled=_bool(_field(data, "enabled", what, True), f"{what}.enabled"),
            scheduled_time=_datetime(scheduled, f"{what}.scheduledTime") if scheduled is not None else None,
        )


@dataclass
class AlarmAction:
    type: ActionType = ActionType.NOTIFICATION
    config: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "config": dict(self.config)}

    @classmethod
    def from_dict(cls, data: dict, what: str = "action") -> "AlarmAction":
        config = _field(data, "config", what, {})
        if not isinstance(config, dict):
            raise ConfigurationValidationError(f"{what}.config must be an object")
        return cls(type=_enum(ActionType, _field(data, "type", what), f"{what}.type"), config=dict(config))


@dataclass
class AlarmRule:
    """Boolean condition over registers that dispatches actions on activation."""
    id: str = field(default_factory=_uid)
    name: str = ""
    condition: str = ""                        # e.g. "temperature > 75 && vibration > 3"
    severity: AlarmSeverity = AlarmSeverity.WARNING
    actions: list[AlarmAction] = field(default_factory=list)
    enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "condition": self.condition,
            "severity": self.severity.value,
            "actions": [a.to_dict() for a in self.actions],
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AlarmRule":
        rid = str(_field(data, "id", "alarm rule"))
        what = f"alarm rule '{rid}'"
        actions = _list(_field(data, "actions", what, []), f"{what}.actions")
        return cls(
            id=rid,
            name=str(_field(data, "name", what, "")),
            condition=str(_field(data, "condition", what)),
            severity=_enum(AlarmSeverity, _field(data, "severity", what, "warning"), f"{what}.severity"),
            actions=[AlarmAction.from_dict(a, f"{what}.actions[{i}]") for i, a in enumerate(actions)],
            enabled=_bool(_field(data, "enabled", what, True), f"{what}.enabled"),
        )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  RECORDED DATA & ANOMALY DETECTION
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class HistoricalDataPoint:
    """One completed tick: register snapshot plus active alarm/fault ids."""
    timestamp: datetime
    registers: dict[str, float] = field(default_factory=dict)
    alarms: list[str] = field(default_factory=list)
    faults: list[str] = field(default_factory=list)
    elapsed: float = 0.0                       # seconds since run start
    anomaly_score: float = 0.0

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "registers": dict(self.registers),
            "alarms": list(self.alarms),
            "faults": list(self.faults),
            "elapsed": self.elapsed,
            "anomalyScore": self.anomaly_score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoricalDataPoint":
        what = "historical data point"
        return cls(
            timestamp=_datetime(_field(data, "timestamp", what), f"{what}.timestamp"),
            registers=_registers(_field(data, "registers", what, {}), f"{what}.registers"),
            alarms=[str(a) for a in _list(_field(data, "alarms", what, []), f"{what}.alarms")],
            faults=[str(f) for f in _list(_field(data, "faults", what, []), f"{what}.faults")],
            elapsed=_finite(_field(data, "elapsed", what, 0.0), f"{what}.elapsed"),
            anomaly_score=_finite(_field(data, "anomalyScore", what, 0.0), f"{what}.anomalyScore"),
        )


@dataclass
class AnomalyEvent:
    timestamp: datetime
    score: float
    parameters: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp.isoformat(), "score": self.score, "parameters": list(self.parameters)}

    @classmethod
    def from_dict(cls, data: dict) -> "AnomalyEvent":
        what = "anomaly event"
        return cls(
            timestamp=_datetime(_field(data, "timestamp", what), f"{what}.timestamp"),
            score=_finite(_field(data, "score", what), f"{what}.score"),
            parameters=[str(p) for p in _list(_field(data, "parameters", what, []), f"{what}.parameters")],
        )


@dataclass
class MLAnomalyConfig:
    """Baseline-distance anomaly detector settings and results."""
    enabled: bool = False
    sensitivity: float = 0.7                   # 0.1-1; higher flags more snapshots
    training_data: list[HistoricalDataPoint] = field(default_factory=list)
    detected_anomalies: list[AnomalyEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "sensitivity": self.sensitivity,
            "trainingData": [p.to_dict() for p in self.training_data],
            "detectedAnomalies": [a.to_dict() for a in self.detected_anomalies],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MLAnomalyConfig":
        what = "mlConfig"
        sensitivity = _finite(_field(data, "sensitivity", what, 0.7), f"{what}.sensitivity")
        if not 0.1 <= sensitivity <= 1.0:
            raise ConfigurationValidationError(f"{what}.sensitivity must be within [0.1, 1]")
        return cls(
            enabled=_bool(_field(data, "enabled", what, False), f"{what}.enabled"),
            sensitivity=sensitivity,
            training_data=[HistoricalDataPoint.from_dict(p)
                           for p in _list(_field(data, "trainingData", what, []), f"{what}.trainingData")],
            detected_anomalies=[AnomalyEvent.from_dict(a)
                                for a in _list(_field(data, "detectedAnomalies", what, []), f"{what}.detectedAnomalies")],
        )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  COMMUNICATION, DEVICES & THE CONFIGURATION DOCUMENT
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class CommunicationConfig:
    latency: float = 0.0                       # milliseconds
    packet_loss: float = 0.0                   # percentage 0-100
    jitter: float = 0.0                        # milliseconds
    enabled: bool = False

    def to_dict(self) -> dict:
        return {"latency": self.latency, "packetLoss": self.packet_loss,
                "jitter": self.jitter, "enabled": self.enabled}

    @classmethod
    def from_dict(cls, data: dict) -> "CommunicationConfig":
        what = "communicationConfig"
        loss = _finite(_field(data, "packetLoss", what, 0.0), f"{what}.packetLoss")
        if not 0.0 <= loss <= 100.0:
            raise ConfigurationValidationError(f"{what}.packetLoss must be within [0, 100]")
        return cls(
            latency=_finite(_field(data, "latency", what, 0.0), f"{what}.latency"),
            packet_loss=loss,
            jitter=_finite(_field(data, "jitter", what, 0.0), f"{what}.jitter"),
            enabled=_bool(_field(data, "enabled", what, False), f"{what}.enabled"),
        )


@dataclass
class SimulationDevice:
    """A simulated PLC, drive or sensor module with its own register set."""
    id: str = field(default_factory=_uid)
    name: str = ""
    type: DeviceType = DeviceType.PLC
    registers: dict[str, float] = field(default_factory=dict)
    status: DeviceStatus = DeviceStatus.OFFLINE
    last_update: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "registers": dict(self.registers),
            "status": self.status.value,
            "lastUpdate": self.last_update.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SimulationDevice":
        did = str(_field(data, "id", "device"))
        what = f"device '{did}'"
        last_update = _field(data, "lastUpdate", what, None)
        return cls(
            id=did,
            name=str(_field(data, "name", what, "")),
            type=_enum(DeviceType, _field(data, "type", what, "PLC"), f"{what}.type"),
            registers=_registers(_field(data, "registers", what, {}), f"{what}.registers"),
            status=_enum(DeviceStatus, _field(data, "status", what, "offline"), f"{what}.status"),
            last_update=_datetime(last_update, f"{what}.lastUpdate") if last_update is not None else datetime.now(),
        )


@dataclass
class SimulationConfiguration:
    """The importable / exportable configuration document."""
    id: str = field(default_factory=_uid)
    name: str = "Current Configuration"
    description: str = ""
    profiles: list[ParameterProfile] = field(default_factory=list)
    interactions: list[ParameterInteraction] = field(default_factory=list)
    fault_scenarios: list[FaultScenario] = field(default_factory=list)
    alarm_rules: list[AlarmRule] = field(default_factory=list)
    ml_config: MLAnomalyConfig = field(default_factory=MLAnomalyConfig)
    communication_config: CommunicationConfig = field(default_factory=CommunicationConfig)
    devices: list[SimulationDevice] = field(default_factory=list)
    global_update_interval: int = 1000         # milliseconds
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "profiles": [p.to_dict() for p in self.profiles],
            "interactions": [i.to_dict() for i in self.interactions],
            "faultScenarios": [f.to_dict() for f in self.fault_scenarios],
            "alarmRules": [r.to_dict() for r in self.alarm_rules],
            "mlConfig": self.ml_config.to_dict(),
            "communicationConfig": self.communication_config.to_dict(),
            "devices": [d.to_dict() for d in self.devices],
            "globalUpdateInterval": self.global_update_interval,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SimulationConfiguration":
        """Parse a configuration document; minimal shape is id + name + profiles list."""
        if not isinstance(data, dict):
            raise ConfigurationValidationError("configuration document must be a JSON object")
        if not data.get("id") or not data.get("name"):
            raise ConfigurationValidationError("configuration document must have an 'id' and a 'name'")
        if not isinstance(data.get("profiles"), list):
            raise ConfigurationValidationError("configuration 'profiles' must be a list")

        what = "configuration"
        interval = _finite(_field(data, "globalUpdateInterval", what, 1000), f"{what}.globalUpdateInterval")
        if interval <= 0:
            raise ConfigurationValidationError(f"{what}.globalUpdateInterval must be positive")
        created_at = _field(data, "createdAt", what, None)
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            description=str(_field(data, "description", what, "")),
            profiles=[ParameterProfile.from_dict(p) for p in data["profiles"]],
            interactions=[ParameterInteraction.from_dict(i)
                          for i in _list(_field(data, "interactions", what, []), f"{what}.interactions")],
            fault_scenarios=[FaultScenario.from_dict(f)
                             for f in _list(_field(data, "faultScenarios", what, []), f"{what}.faultScenarios")],
            alarm_rules=[AlarmRule.from_dict(r)
                         for r in _list(_field(data, "alarmRules", what, []), f"{what}.alarmRules")],
            ml_config=MLAnomalyConfig.from_dict(_field(data, "mlConfig", what, {})),
            communication_config=CommunicationConfig.from_dict(_field(data, "communicationConfig", what, {})),
            devices=[SimulationDevice.from_dict(d)
                     for d in _list(_field(data, "devices", what, []), f"{what}.devices")],
            global_update_interval=max(1, round(interval)),
            created_at=_datetime(created_at, f"{what}.createdAt") if created_at is not None else datetime.now(),
        )
