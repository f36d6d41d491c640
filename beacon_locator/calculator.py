from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .exceptions import CalculationError
from .models import BeaconObservation, CalculatorType, PositionEstimate, now_millis


logger = logging.getLogger(__name__)

EARTH_RADIUS = 6_371_000.0

# 少于该数量的有效信标时多边定位欠定，回退加权质心
MIN_MULTILATERATION_BEACONS = 3


class Rssi2DistanceMethod(Enum):
    DEFAULT = "default"
    IMPROVED = "improved"


class RssiModel:
    """RSSI -> 距离（米）模型，供只上报 RSSI 的扫描源使用"""

    def __init__(
        self,
        tx_power: float = -59.0,
        path_loss_exponent: float = 2.0,
        a: float = -2.48,
        b: float = 67.81,
        method: Rssi2DistanceMethod = Rssi2DistanceMethod.DEFAULT,
    ):
        # 1米处的RSSI值 (dBm)
        self.tx_power = float(tx_power)
        # 路径损耗指数
        self.path_loss_exponent = float(path_loss_exponent)
        self.a = float(a)
        self.b = float(b)
        self.method = method

    @classmethod
    def from_config(cls, rssi_config: dict) -> "RssiModel":
        method = rssi_config.get("method", Rssi2DistanceMethod.DEFAULT.value)
        try:
            method = Rssi2DistanceMethod(method)
        except ValueError:
            logger.warning("未知的 RSSI 模型方法 %r，使用 default", method)
            method = Rssi2DistanceMethod.DEFAULT
        return cls(
            tx_power=rssi_config.get("tx_power", -59.0),
            path_loss_exponent=rssi_config.get("path_loss_exponent", 2.0),
            a=rssi_config.get("a", -2.48),
            b=rssi_config.get("b", 67.81),
            method=method,
        )

    def distance(self, rssi: float, method: Optional[Rssi2DistanceMethod] = None) -> Optional[float]:
        """
        基于RSSI计算距离 (单位: 米)
        method: "default" 使用路径损失模型，"improved" 使用线性拟合模型
        RSSI 为 0 或超出数值范围表示读数无效，返回 None
        """
        if rssi == 0:
            return None
        try:
            match method or self.method:
                case Rssi2DistanceMethod.IMPROVED:
                    r = max((rssi + self.b) / self.a, 0.1)
                case Rssi2DistanceMethod.DEFAULT:
                    exponent = (self.tx_power - rssi) / (10.0 * self.path_loss_exponent)
                    r = math.pow(10, exponent)
                case _:
                    return None
        except OverflowError:
            logger.debug("RSSI %s 超出模型范围", rssi)
            return None
        return r if math.isfinite(r) else None


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """两点球面距离（米）。"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS * c


def inverse_square_weight(distance: float) -> float:
    """距离权重：近一倍的信标影响力为四倍"""
    return 1.0 / (distance * distance)


def valid_observations(batch: Iterable[BeaconObservation]) -> List[BeaconObservation]:
    """过滤掉距离未知或为 0 的信标（0 距离会导致权重无穷大）"""
    return [b for b in batch if b.distance is not None and b.distance > 0]


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def weighted_centroid(observations: Sequence[BeaconObservation]) -> Optional[Tuple[float, float, float]]:
    """
    反距离平方加权质心
    返回 (lat, lon, accuracy)，无有效信标时返回 None
    """
    payloads = valid_observations(observations)
    if not payloads:
        return None
    if len(payloads) == 1:
        only = payloads[0]
        return only.latitude, only.longitude, float(only.distance)

    weights = [inverse_square_weight(b.distance) for b in payloads]
    total_weight = sum(weights)
    if not math.isfinite(total_weight) or total_weight <= 0:
        raise CalculationError(f"权重总和非法: {total_weight}")

    lat = sum(b.latitude * w for b, w in zip(payloads, weights)) / total_weight
    lon = sum(b.longitude * w for b, w in zip(payloads, weights)) / total_weight
    accuracy = sum(b.distance * w for b, w in zip(payloads, weights)) / total_weight
    if not all(math.isfinite(v) for v in (lat, lon, accuracy)):
        raise CalculationError("加权质心结果不是有限数")

    # 加权平均必须落在锚点坐标的凸包内，消除浮点舍入误差
    lats = [b.latitude for b in payloads]
    lons = [b.longitude for b in payloads]
    return _clamp(lat, min(lats), max(lats)), _clamp(lon, min(lons), max(lons)), accuracy


def _to_local(
    observations: Sequence[BeaconObservation],
) -> Tuple[np.ndarray, float, float, float]:
    """经纬度 -> 以锚点均值为原点的局部东/北平面坐标（米）"""
    lat0 = float(np.mean([b.latitude for b in observations]))
    lon0 = float(np.mean([b.longitude for b in observations]))
    cos_lat0 = math.cos(math.radians(lat0))
    if cos_lat0 < 1e-9:
        raise CalculationError(f"纬度 {lat0} 过于接近极点，无法投影")
    points = np.array(
        [
            (
                EARTH_RADIUS * math.radians(b.longitude - lon0) * cos_lat0,
                EARTH_RADIUS * math.radians(b.latitude - lat0),
            )
            for b in observations
        ]
    )
    return points, lat0, lon0, cos_lat0


def multilaterate(observations: Sequence[BeaconObservation]) -> Optional[Tuple[float, float, float]]:
    """
    线性最小二乘多边定位（二维）
    圆方程 (x-xi)^2+(y-yi)^2=di^2 两两相减（以最后一个信标为参考）消去二次项，
    得到 A·p = b，用最小二乘求解。
    有效信标少于3个时回退加权质心。
    返回 (lat, lon, accuracy)
    """
    payloads = valid_observations(observations)
    if len(payloads) < MIN_MULTILATERATION_BEACONS:
        return weighted_centroid(payloads)

    points, lat0, lon0, cos_lat0 = _to_local(payloads)
    distances = np.array([b.distance for b in payloads], dtype=float)

    ref = points[-1]
    ref_d = distances[-1]
    a = 2 * (ref - points[:-1])
    b = (
        distances[:-1] ** 2
        - ref_d**2
        - np.sum(points[:-1] ** 2, axis=1)
        + np.sum(ref**2)
    )

    if np.linalg.matrix_rank(a) < 2:
        raise CalculationError("信标几何退化（重合或共线），无法多边定位")

    solution, *_ = np.linalg.lstsq(a, b, rcond=None)
    if not np.all(np.isfinite(solution)):
        raise CalculationError("多边定位解不是有限数")

    x, y = float(solution[0]), float(solution[1])
    residuals = np.hypot(points[:, 0] - x, points[:, 1] - y) - distances
    accuracy = float(np.sqrt(np.mean(residuals**2)))

    lat = lat0 + math.degrees(y / EARTH_RADIUS)
    lon = lon0 + math.degrees(x / (EARTH_RADIUS * cos_lat0))
    if not all(math.isfinite(v) for v in (lat, lon, accuracy)):
        raise CalculationError("多边定位结果不是有限数")
    return lat, lon, accuracy


class PositionCalculator:
    """基于信标距离的定位算法，策略在构造时选定"""

    def __init__(self, calculator_type: CalculatorType = CalculatorType.MULTILATERATION):
        self.calculator_type = calculator_type

    def compute(
        self, batch: Sequence[BeaconObservation], timestamp: Optional[int] = None
    ) -> Optional[PositionEstimate]:
        """根据一批信标观测计算终端位置：
        - 无有效信标：返回 None（不是错误）
        - 1 个信标：返回该信标位置，accuracy 取其距离
        - 多边定位需要 >=3 个有效信标，否则回退加权质心
        数值错误以 CalculationError 抛出，由调用方转换
        """
        match self.calculator_type:
            case CalculatorType.MULTILATERATION:
                result = multilaterate(batch)
            case CalculatorType.WEIGHTED_CENTROID:
                result = weighted_centroid(batch)
            case _:
                raise CalculationError(f"未知的定位算法: {self.calculator_type}")

        if result is None:
            logger.debug("无有效信标，跳过定位（批次大小 %d）", len(batch))
            return None

        lat, lon, accuracy = result
        return PositionEstimate(
            latitude=lat,
            longitude=lon,
            accuracy=accuracy,
            timestamp=timestamp if timestamp is not None else now_millis(),
        )
