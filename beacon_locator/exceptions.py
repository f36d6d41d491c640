from __future__ import annotations


class BeaconLocatorError(Exception):
    """所有定位相关异常的基类"""


class CalculationError(BeaconLocatorError):
    """位置计算过程中的数值错误（退化几何、非有限结果等）"""


class ScannerError(BeaconLocatorError):
    """信标扫描源（上游数据流）异常"""


class PipelineClosedError(BeaconLocatorError):
    """定位管线已被 cleanup，不允许再次启动"""


class SlotClosedError(BeaconLocatorError):
    """状态槽已关闭"""
