from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Any, Callable, Dict, NamedTuple

from .models import CalculatorType


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.environ.get(
    "BEACON_LOCATOR_CONFIG", os.path.join(".", "config", "config.yaml")
)

DEFAULT_CALCULATOR = CalculatorType.MULTILATERATION


class Setting(NamedTuple):
    section: str
    key: str
    env: str
    default: Any
    cast: Callable[[str], Any] = str


# 配置项默认值，可由同名环境变量覆盖
SETTINGS = (
    Setting("mqtt", "ip", "BEACON_MQTT_IP", "localhost"),
    Setting("mqtt", "port", "BEACON_MQTT_PORT", 1883, int),
    Setting("mqtt", "scan_topic", "BEACON_MQTT_SCAN_TOPIC", "/beacon/scan/+"),
    Setting("mqtt", "location_topic", "BEACON_MQTT_LOCATION_TOPIC", "/beacon/location"),
    Setting("rssi_model", "tx_power", "BEACON_RSSI_TX_POWER", -59, float),
    Setting("rssi_model", "path_loss_exponent", "BEACON_RSSI_PATH_LOSS", 2.0, float),
    Setting("rssi_model", "a", "BEACON_RSSI_A", -2.48, float),
    Setting("rssi_model", "b", "BEACON_RSSI_B", 67.81, float),
    Setting("rssi_model", "method", "BEACON_RSSI_METHOD", "default"),
    Setting("positioning", "calculator", "BEACON_CALCULATOR", DEFAULT_CALCULATOR.value),
    Setting("paths", "anchor_db", "BEACON_PATH_ANCHOR_DB", os.path.join(".", "beacon", "anchors.csv")),
)


def _resolve(setting: Setting) -> Any:
    raw = os.environ.get(setting.env)
    if raw is None:
        return setting.default
    try:
        return setting.cast(raw)
    except ValueError:
        logger.warning("环境变量 %s=%r 无法解析，使用默认值 %r", setting.env, raw, setting.default)
        return setting.default


def build_default_config() -> Dict[str, Dict[str, Any]]:
    config: Dict[str, Dict[str, Any]] = {}
    for setting in SETTINGS:
        config.setdefault(setting.section, {})[setting.key] = _resolve(setting)
    return config


def _fill_missing(target: Dict[str, Any], defaults: Dict[str, Any]) -> int:
    """把 defaults 中缺少的键补进 target，返回补充的键数"""
    added = 0
    for key, value in defaults.items():
        current = target.get(key)
        if key not in target:
            target[key] = copy.deepcopy(value)
            added += 1
        elif isinstance(value, dict) and isinstance(current, dict):
            added += _fill_missing(current, value)
    return added


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = build_default_config()
        self.config: Dict[str, Any] = {}
        self.load_config()

    def load_config(self) -> None:
        """
        读取配置文件并补全缺省项
        文件不存在时写出默认配置；文件损坏时仅在内存中使用默认配置，不覆盖原文件
        """
        if not os.path.exists(self.config_file):
            logger.info("配置文件 %s 不存在，写入默认配置", self.config_file)
            self.config = copy.deepcopy(self.default_config)
            self.save_config()
            return

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("读取配置文件 %s 失败，使用默认配置: %s", self.config_file, e)
            self.config = copy.deepcopy(self.default_config)
            return

        if not isinstance(loaded, dict):
            logger.warning("配置文件 %s 顶层不是映射，已忽略其内容", self.config_file)
            loaded = {}
        added = _fill_missing(loaded, self.default_config)
        if added:
            logger.debug("配置文件缺少 %d 项，已使用默认值补全", added)
        self.config = loaded

    def save_config(self) -> None:
        directory = os.path.dirname(self.config_file)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.safe_dump(self.config, f, default_flow_style=False, allow_unicode=True, sort_keys=False)
        except OSError as e:
            logger.warning("保存配置文件 %s 失败: %s", self.config_file, e)

    def _update(self, section: str, **values: Any) -> None:
        target = self.config.setdefault(section, {})
        target.update({k: v for k, v in values.items() if v is not None})
        self.save_config()

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_rssi_model_config(self):
        return self.config["rssi_model"]

    def get_paths(self):
        return self.config.get("paths", {})

    def get_anchor_db_path(self):
        return self.get_paths()["anchor_db"]

    def get_calculator_type(self) -> CalculatorType:
        name = self.config.get("positioning", {}).get("calculator", DEFAULT_CALCULATOR.value)
        try:
            return CalculatorType(name)
        except ValueError:
            logger.warning("未知的定位算法 %r，使用 %s", name, DEFAULT_CALCULATOR.value)
            return DEFAULT_CALCULATOR

    def set_mqtt_config(self, ip, port, scan_topic=None, location_topic=None):
        self._update("mqtt", ip=ip, port=port, scan_topic=scan_topic, location_topic=location_topic)

    def set_rssi_model_config(
        self, tx_power: float, path_loss_exponent: float, a: float, b: float, method: str | None = None
    ):
        self._update(
            "rssi_model",
            tx_power=tx_power,
            path_loss_exponent=path_loss_exponent,
            a=a,
            b=b,
            method=method,
        )

    def set_calculator_type(self, calculator_type: CalculatorType):
        self._update("positioning", calculator=calculator_type.value)
