from __future__ import annotations

import os

import yaml

from beacon_locator.config_manager import ConfigManager
from beacon_locator.models import CalculatorType


def test_missing_file_writes_defaults(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    config = ConfigManager(str(path))

    assert os.path.exists(path)
    assert config.get_mqtt_config()["port"] == 1883
    assert config.get_calculator_type() is CalculatorType.MULTILATERATION


def test_partial_file_is_merged_with_defaults(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.dump({"mqtt": {"ip": "10.0.0.5"}, "positioning": {"calculator": "weighted_centroid"}}),
        encoding="utf-8",
    )

    config = ConfigManager(str(path))

    assert config.get_mqtt_config()["ip"] == "10.0.0.5"
    assert config.get_mqtt_config()["scan_topic"] == "/beacon/scan/+"
    assert config.get_rssi_model_config()["tx_power"] == -59
    assert config.get_calculator_type() is CalculatorType.WEIGHTED_CENTROID


def test_unknown_calculator_falls_back_to_default(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"positioning": {"calculator": "fingerprinting"}}), encoding="utf-8")

    assert ConfigManager(str(path)).get_calculator_type() is CalculatorType.MULTILATERATION


def test_environment_overrides_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("BEACON_MQTT_PORT", "1999")
    monkeypatch.setenv("BEACON_CALCULATOR", "weighted_centroid")

    config = ConfigManager(str(tmp_path / "config.yaml"))

    assert config.get_mqtt_config()["port"] == 1999
    assert config.get_calculator_type() is CalculatorType.WEIGHTED_CENTROID


def test_setters_persist(tmp_path) -> None:
    path = str(tmp_path / "config.yaml")
    config = ConfigManager(path)
    config.set_calculator_type(CalculatorType.WEIGHTED_CENTROID)
    config.set_rssi_model_config(-61.0, 2.4, -2.0, 60.0, method="improved")

    reloaded = ConfigManager(path)

    assert reloaded.get_calculator_type() is CalculatorType.WEIGHTED_CENTROID
    assert reloaded.get_rssi_model_config()["path_loss_exponent"] == 2.4
    assert reloaded.get_rssi_model_config()["method"] == "improved"


def test_unreadable_yaml_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("mqtt: [unterminated", encoding="utf-8")

    config = ConfigManager(str(path))

    assert config.get_mqtt_config()["ip"] == "localhost"
    # 损坏的文件不被覆盖
    assert path.read_text(encoding="utf-8") == "mqtt: [unterminated"


def test_unparsable_environment_value_keeps_default(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("BEACON_MQTT_PORT", "not-a-port")
    monkeypatch.setenv("BEACON_RSSI_TX_POWER", "-65.5")

    config = ConfigManager(str(tmp_path / "config.yaml"))

    assert config.get_mqtt_config()["port"] == 1883
    assert config.get_rssi_model_config()["tx_power"] == -65.5


def test_mqtt_setter_keeps_topics_when_omitted(tmp_path) -> None:
    path = str(tmp_path / "config.yaml")
    config = ConfigManager(path)
    config.set_mqtt_config("10.1.1.1", 8883, location_topic="/site/a/location")

    mqtt_config = ConfigManager(path).get_mqtt_config()

    assert mqtt_config["ip"] == "10.1.1.1"
    assert mqtt_config["port"] == 8883
    assert mqtt_config["scan_topic"] == "/beacon/scan/+"
    assert mqtt_config["location_topic"] == "/site/a/location"
