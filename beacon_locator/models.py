from __future__ import annotations

import math
import time
import uuid as uuid_lib
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


_MAX_SUB_ID = 0xFFFF


def _check_sub_id(name: str, value: int) -> None:
    if not 0 <= value <= _MAX_SUB_ID:
        raise ValueError(f"{name} 超出 16 位范围: {value}")


def _check_coordinates(latitude: float, longitude: float) -> None:
    if not (math.isfinite(latitude) and -90.0 <= latitude <= 90.0):
        raise ValueError(f"非法纬度: {latitude}")
    if not (math.isfinite(longitude) and -180.0 <= longitude <= 180.0):
        raise ValueError(f"非法经度: {longitude}")


class CalculatorType(Enum):
    WEIGHTED_CENTROID = "weighted_centroid"
    MULTILATERATION = "multilateration"


@dataclass(frozen=True)
class BeaconIdentity:
    """iBeacon 标识：UUID + major + minor，唯一对应一个物理锚点"""

    uuid: uuid_lib.UUID
    major: int
    minor: int

    def __post_init__(self):
        if not isinstance(self.uuid, uuid_lib.UUID):
            object.__setattr__(self, "uuid", uuid_lib.UUID(str(self.uuid)))
        _check_sub_id("major", self.major)
        _check_sub_id("minor", self.minor)

    @property
    def key(self) -> str:
        return f"{self.uuid}:{self.major}:{self.minor}"

    @classmethod
    def parse(cls, key: str) -> "BeaconIdentity":
        parts = key.strip().split(":")
        if len(parts) != 3:
            raise ValueError(f"非法信标标识: {key!r}")
        return cls(uuid=uuid_lib.UUID(parts[0]), major=int(parts[1]), minor=int(parts[2]))


@dataclass(frozen=True)
class BeaconObservation:
    """
    一次扫描中检测到的单个信标
    distance 为 None 表示信号模型无法给出距离
    """

    uuid: uuid_lib.UUID
    major: int
    minor: int
    rssi: int
    distance: Optional[float]
    latitude: float
    longitude: float

    def __post_init__(self):
        if not isinstance(self.uuid, uuid_lib.UUID):
            object.__setattr__(self, "uuid", uuid_lib.UUID(str(self.uuid)))
        _check_sub_id("major", self.major)
        _check_sub_id("minor", self.minor)
        if self.distance is not None:
            if not math.isfinite(self.distance) or self.distance < 0:
                raise ValueError(f"非法距离: {self.distance}")

    @property
    def identity(self) -> BeaconIdentity:
        return BeaconIdentity(uuid=self.uuid, major=self.major, minor=self.minor)

    @property
    def has_distance(self) -> bool:
        return self.distance is not None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["uuid"] = str(self.uuid)
        return d


@dataclass(frozen=True)
class Anchor:
    """已登记的固定信标（锚点）位置"""

    identity: BeaconIdentity
    latitude: float
    longitude: float
    altitude: float = 0.0

    def __post_init__(self):
        _check_coordinates(self.latitude, self.longitude)

    @property
    def key(self) -> str:
        return self.identity.key

    def observe(self, rssi: int, distance: Optional[float]) -> BeaconObservation:
        return BeaconObservation(
            uuid=self.identity.uuid,
            major=self.identity.major,
            minor=self.identity.minor,
            rssi=rssi,
            distance=distance,
            latitude=self.latitude,
            longitude=self.longitude,
        )


@dataclass(frozen=True)
class PositionEstimate:
    """
    终端位置估计
    accuracy 为置信半径（米），timestamp 为批次采集时间（毫秒时间戳）
    """

    latitude: float
    longitude: float
    accuracy: float
    timestamp: int

    def __post_init__(self):
        for name in ("latitude", "longitude", "accuracy"):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ValueError(f"{name} 不是有限数: {value}")
        if self.accuracy < 0:
            raise ValueError(f"accuracy 不能为负: {self.accuracy}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ScanBatch:
    """一次扫描得到的信标观测，timestamp 为采集时间（毫秒时间戳）"""

    observations: Tuple[BeaconObservation, ...]
    timestamp: int

    def __post_init__(self):
        if not isinstance(self.observations, tuple):
            object.__setattr__(self, "observations", tuple(self.observations))


@dataclass(frozen=True)
class LocationUpdate:
    """
    发布给观察者的定位结果

    error 仅在计算失败或上游扫描失败时设置；
    空批次或有效信标不足不算错误（position 为 None，error 也为 None）。
    """

    position: Optional[PositionEstimate]
    beacons: Tuple[BeaconObservation, ...] = ()
    error: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.beacons, tuple):
            object.__setattr__(self, "beacons", tuple(self.beacons))

    @classmethod
    def initial(cls) -> "LocationUpdate":
        return cls(position=None, beacons=(), error=None)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "position": self.position.to_dict() if self.position else None,
            "beacons": [b.to_dict() for b in self.beacons],
        }
        if self.error is not None:
            d["error"] = self.error
        return d
