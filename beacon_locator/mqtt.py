from __future__ import annotations

import json
import logging
import math
import threading
from typing import Any, Callable, List, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .anchor_store import AnchorStore
from .broadcast import StateSlot
from .calculator import RssiModel
from .config_manager import ConfigManager
from .exceptions import ScannerError
from .models import BeaconObservation, LocationUpdate, ScanBatch, now_millis
from .scanner import BeaconScanner


logger = logging.getLogger(__name__)


def create_client() -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)


def _parse_distance(raw: Any) -> Optional[float]:
    if raw is None:
        return None
    distance = float(raw)
    if not math.isfinite(distance) or distance < 0:
        return None
    return distance


def _parse_timestamp(raw: Any) -> int:
    if raw is None:
        return now_millis()
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw) or raw < 0:
        logger.warning("非法的采集时间 %r，使用接收时刻", raw)
        return now_millis()
    return int(raw)


def parse_scan_payload(
    payload: str, anchor_store: AnchorStore, rssi_model: RssiModel
) -> ScanBatch:
    """
    解析网关上报的扫描数据
    格式：{"timestamp": 1700000000000, "beacons": [{"uuid": ..., "major": 1, "minor": 2, "rssi": -70, "distance": 1.5}, ...]}
    distance 可省略，此时由 RSSI 模型估算；未登记的信标被忽略
    timestamp 为采集时间（毫秒），缺省或非法时取接收时刻
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"扫描数据不是合法 JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("beacons"), list):
        raise ValueError("扫描数据缺少 beacons 列表")

    batch: List[BeaconObservation] = []
    for item in data["beacons"]:
        try:
            rssi = int(item["rssi"])
            distance = _parse_distance(item.get("distance"))
            if distance is None:
                distance = rssi_model.distance(rssi)
            observation = anchor_store.locate(
                uuid=item["uuid"],
                major=int(item["major"]),
                minor=int(item["minor"]),
                rssi=rssi,
                distance=distance,
            )
        except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as e:
            logger.warning("忽略无效的信标记录 %r: %s", item, e)
            continue
        if observation is None:
            logger.debug("未登记的信标: %s:%s:%s", item.get("uuid"), item.get("major"), item.get("minor"))
            continue
        batch.append(observation)
    return ScanBatch(observations=tuple(batch), timestamp=_parse_timestamp(data.get("timestamp")))


class MQTTBeaconScanner(BeaconScanner):
    """通过 MQTT 接收扫描网关上报的信标数据"""

    def __init__(
        self,
        config_manager: ConfigManager,
        anchor_store: AnchorStore,
        rssi_model: Optional[RssiModel] = None,
        client_factory: Callable[[], mqtt.Client] = create_client,
    ):
        super().__init__()
        self.config_manager = config_manager
        self.anchor_store = anchor_store
        self.rssi_model = rssi_model or RssiModel.from_config(config_manager.get_rssi_model_config())
        self._client_factory = client_factory
        self.client: Optional[mqtt.Client] = None
        self._connected = False

    @property
    def topic(self) -> str:
        return self.config_manager.get_mqtt_config().get("scan_topic", "/beacon/scan/+")

    # ---------- Hooks ----------
    def _on_start(self) -> None:
        if self.client is None:
            self._connect()
        elif self._connected:
            self.client.subscribe(self.topic)
            logger.info("已订阅主题: %s", self.topic)

    def _on_stop(self) -> None:
        if self.client is not None and self._connected:
            self.client.unsubscribe(self.topic)
            logger.info("已取消订阅主题: %s", self.topic)

    def _on_release(self) -> None:
        if self.client is None:
            return
        try:
            self.client.disconnect()
            self.client.loop_stop()
            logger.info("MQTT连接已断开")
        except Exception as e:
            logger.error("断开MQTT连接时出错: %s", e)
        finally:
            self.client = None
            self._connected = False

    # ---------- MQTT ----------
    def _connect(self) -> None:
        self.client = self._client_factory()
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.client.on_message = self.on_message
        mqtt_config = self.config_manager.get_mqtt_config()
        try:
            self.client.connect(mqtt_config["ip"], int(mqtt_config["port"]), 60)
            logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
            self.client.loop_start()
        except (OSError, ValueError) as e:
            logger.error("MQTT连接错误: %s", e)
            self.fail(ScannerError(f"MQTT connection failed: {e}"))

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error("连接失败，返回码: %s", reason_code)
            self.fail(ScannerError(f"MQTT connection refused: {reason_code}"))
            return
        logger.info("成功连接到MQTT服务器")
        self._connected = True
        if self.is_scanning:
            client.subscribe(self.topic)
            logger.info("已订阅主题: %s", self.topic)

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected = False
        if self.released:
            return
        if reason_code.is_failure:
            self.fail(ScannerError(f"MQTT connection lost: {reason_code}"))

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            payload = msg.payload.decode("utf-8")
            batch = parse_scan_payload(payload, self.anchor_store, self.rssi_model)
        except (UnicodeDecodeError, ValueError, ArithmeticError) as e:
            logger.warning("消息解析失败 (%s): %s", msg.topic, e)
            return
        self.emit(batch.observations, timestamp=batch.timestamp)


class MQTTLocationPublisher:
    """订阅定位结果并以 JSON 发布到 MQTT"""

    def __init__(self, config_manager: ConfigManager, client: mqtt.Client, slot: StateSlot[LocationUpdate]):
        self.config_manager = config_manager
        self.client = client
        self._subscription = slot.subscribe()
        self._thread: Optional[threading.Thread] = None

    @property
    def topic(self) -> str:
        return self.config_manager.get_mqtt_config().get("location_topic", "/beacon/location")

    def publish(self, update: LocationUpdate) -> None:
        message = json.dumps(update.to_dict(), ensure_ascii=False)
        self.client.publish(self.topic, message)

    def _run(self) -> None:
        for update in self._subscription:
            try:
                self.publish(update)
            except Exception as e:
                logger.error("发布定位结果失败: %s", e)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="location-publisher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._subscription.close()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
