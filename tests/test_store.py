import json
import xml.etree.ElementTree as ET

import pytest

from sim_config.errors import ConfigurationValidationError
from sim_config.ontology import (
    FaultScenario, FaultType, ParameterInteraction, ParameterProfile, ParameterRange, ProfileType,
    SimulationConfiguration,
)
from sim_config.store import ConfigurationStore, DefaultConfigurationBuilder


def default_store():
    return DefaultConfigurationBuilder().build()


def test_default_configuration():
    store = default_store()
    assert [p.id for p in store.profiles] == ["startup", "normal-operation", "load-spike"]
    startup = store.get_profile("startup")
    assert startup.type == ProfileType.RAMP_UP
    assert startup.duration == 300
    assert startup.parameters["speed"].max_value == 1500
    assert store.get_fault_scenario("temperature-sensor-failure").trigger_condition == "temperature > 80"
    assert {d.type.value for d in store.devices} == {"PLC", "Drive", "Sensor"}
    assert store.devices[0].registers == {"temperature": 25.0, "power": 0.0, "vibration": 0.0, "speed": 0.0}
    assert store.stats()["total_entities"] == 3 + 2 + 3 + 4 + 3


def test_save_replaces_in_place_and_remove():
    store = ConfigurationStore()
    for iid in ("a", "b", "c"):
        store.save_interaction(ParameterInteraction(id=iid, source_parameter="x", target_parameter="y"))
    store.save_interaction(ParameterInteraction(id="b", source_parameter="x", target_parameter="z"))

    assert [i.id for i in store.interactions] == ["a", "b", "c"]
    assert store.get_interaction("b").target_parameter == "z"
    assert store.remove_interaction("a")
    assert not store.remove_interaction("a")
    assert [i.id for i in store.interactions] == ["b", "c"]


def test_invalid_entities_are_rejected():
    store = ConfigurationStore()
    with pytest.raises(ConfigurationValidationError):
        store.save_profile(ParameterProfile(id="p", duration=0))
    with pytest.raises(ConfigurationValidationError):
        store.save_profile(ParameterProfile(id="p", parameters={"t": ParameterRange(10, 5)}))
    with pytest.raises(ConfigurationValidationError):
        store.save_fault_scenario(FaultScenario(id="f", type=FaultType.SHUTDOWN, duration=-1))


def test_json_round_trip():
    store = default_store()
    text = store.export_json()

    restored = ConfigurationStore()
    restored.import_json(text)
    assert restored.configuration.to_dict() == store.configuration.to_dict()


def test_failed_import_keeps_previous_configuration():
    store = default_store()
    before = store.export_json()

    broken = json.loads(before)
    broken["profiles"][0]["parameters"]["temperature"]["min"] = 999

    for text in ("{not json", json.dumps({"id": "x", "name": "y"}), json.dumps(broken),
                 json.dumps({"id": "x", "name": "y", "profiles": [], "alarmRules": [{"id": "r"}]})):
        with pytest.raises(ConfigurationValidationError):
            store.import_json(text)
        assert store.export_json() == before


def test_import_file(tmp_path):
    path = tmp_path / "config.json"
    default_store().export_json(str(path))
    store = ConfigurationStore()
    configuration = store.import_file(str(path))
    assert configuration.id == "default"
    assert len(store.profiles) == 3

    with pytest.raises(ConfigurationValidationError):
        store.import_file(str(tmp_path / "missing.json"))


def test_minimal_document_gets_defaults():
    configuration = SimulationConfiguration.from_dict({"id": "c", "name": "Minimal", "profiles": []})
    assert configuration.global_update_interval == 1000
    assert configuration.ml_config.sensitivity == 0.7
    assert not configuration.communication_config.enabled


def test_xml_export_is_a_lossy_summary(tmp_path):
    store = default_store()
    text = store.export_xml(str(tmp_path / "config.xml"))
    root = ET.fromstring(text.encode("utf-8"))

    assert root.tag == "SimulationConfiguration"
    assert root.findtext("Name") == "Default Simulation"
    assert [p.findtext("Id") for p in root.find("Profiles")] == ["startup", "normal-operation", "load-spike"]
    assert root.find("Profiles/Profile/Type").text == "ramp-up"
    interaction = root.find("Interactions/Interaction")
    assert interaction.findtext("Equation") == "target = source / 500"
    assert interaction.findtext("Enabled") == "true"
    assert root.find("AlarmRules") is None
    assert (tmp_path / "config.xml").read_text(encoding="utf-8") == text


def test_snapshot_is_independent():
    store = default_store()
    snapshot = store.snapshot()
    store.get_profile("startup").name = "Changed"
    assert snapshot.profiles[0].name == "System Startup"


def test_fractional_update_interval_is_rounded_up_to_one_millisecond():
    configuration = SimulationConfiguration.from_dict(
        {"id": "c", "name": "Fast", "profiles": [], "globalUpdateInterval": 0.5})
    assert configuration.global_update_interval == 1
    assert SimulationConfiguration.from_dict(
        {"id": "c", "name": "Slow", "profiles": [], "globalUpdateInterval": 1500.6}).global_update_interval == 1501


def test_enabled_flags_must_be_booleans():
    store = default_store()
    before = store.export_json()
    document = json.loads(before)
    document["alarmRules"][0]["enabled"] = "false"

    with pytest.raises(ConfigurationValidationError, match="true or false"):
        store.import_json(json.dumps(document))
    assert store.export_json() == before

    with pytest.raises(ConfigurationValidationError):
        SimulationConfiguration.from_dict(
            {"id": "c", "name": "y", "profiles": [], "mlConfig": {"enabled": 1}})
