from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from .broadcast import StateSlot
from .calculator import PositionCalculator
from .exceptions import PipelineClosedError, SlotClosedError
from .models import CalculatorType, LocationUpdate, ScanBatch
from .scanner import BatchSubscription, BeaconScanner


logger = logging.getLogger(__name__)

# cleanup 时等待处理线程退出的上限（秒）
JOIN_TIMEOUT = 5.0


class LocationManager:
    """
    定位管线：订阅信标扫描源，逐批计算位置，并把 LocationUpdate 发布到最新值广播槽

    单个后台线程顺序处理批次；单批计算失败只影响该批（写入 error），不会终止数据流。
    扫描器初始化失败时记录错误、发布一条 error 更新，实例直接进入已清理状态。
    """

    def __init__(
        self,
        scanner_factory: Callable[[], BeaconScanner],
        calculator_type: CalculatorType = CalculatorType.MULTILATERATION,
        calculator: Optional[PositionCalculator] = None,
    ):
        self._lock = threading.Lock()
        self._scanner: Optional[BeaconScanner] = None
        self._subscription: Optional[BatchSubscription] = None
        self._worker: Optional[threading.Thread] = None
        self._cancelled = threading.Event()
        self._closed = False
        self._upstream_failed = threading.Event()
        self.position_calculator = calculator or PositionCalculator(calculator_type)
        self.location_updates: StateSlot[LocationUpdate] = StateSlot(LocationUpdate.initial())

        try:
            self._scanner = scanner_factory()
            self._subscription = self._scanner.subscribe()
        except Exception as e:
            logger.error("初始化信标扫描器失败: %s", e)
            self.location_updates.publish(
                LocationUpdate(
                    position=None,
                    beacons=(),
                    error=f"Failed to initialize beacon scanner: {e}",
                )
            )
            self.cleanup()
            return

        self._worker = threading.Thread(
            target=self._process, name="location-pipeline", daemon=True
        )
        self._worker.start()

    # ---------- Properties ----------
    @property
    def is_scanning(self) -> bool:
        scanner = self._scanner
        return scanner is not None and scanner.is_scanning

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def upstream_failed(self) -> bool:
        """扫描源已故障，处理线程已退出；恢复需要调用方重建实例"""
        return self._upstream_failed.is_set()

    # ---------- Control ----------
    def start(self) -> None:
        with self._lock:
            if self._closed or self._scanner is None:
                raise PipelineClosedError("定位管线已清理，请创建新实例")
            self._scanner.start_scanning()

    def stop(self) -> None:
        with self._lock:
            if self._scanner is not None:
                self._scanner.stop_scanning()

    def cleanup(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            scanner, self._scanner = self._scanner, None
            subscription, self._subscription = self._subscription, None

        self._cancelled.set()
        try:
            if subscription is not None:
                subscription.close()
            if scanner is not None:
                scanner.cleanup()
        except Exception as e:
            logger.error("清理扫描器时出错: %s", e)

        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(JOIN_TIMEOUT)
            if worker.is_alive():
                logger.warning("定位处理线程未在 %.1f 秒内退出", JOIN_TIMEOUT)
        self.location_updates.close()
        logger.info("定位管线已清理")

    # ---------- Processing ----------
    def _publish(self, update: LocationUpdate) -> None:
        try:
            self.location_updates.publish(update)
        except SlotClosedError:
            logger.debug("状态槽已关闭，丢弃定位更新")

    def _process(self) -> None:
        subscription = self._subscription
        if subscription is None:
            return
        try:
            for batch in subscription:
                if self._cancelled.is_set():
                    break
                self._handle_batch(batch)
        except Exception as e:
            if self._cancelled.is_set():
                return
            logger.error("处理信标数据流出错: %s", e)
            # 不再消费，从扫描源脱离
            subscription.close()
            self._upstream_failed.set()
            self._publish(
                LocationUpdate(
                    position=None,
                    beacons=(),
                    error=f"Error processing beacons: {e}",
                )
            )

    def _handle_batch(self, batch: ScanBatch) -> None:
        beacons = batch.observations
        try:
            position = self.position_calculator.compute(beacons, timestamp=batch.timestamp)
        except Exception as e:
            logger.exception("位置计算出错: %s", e)
            self._publish(
                LocationUpdate(
                    position=None,
                    beacons=beacons,
                    error=f"Error calculating position: {e}",
                )
            )
            return

        if position is not None:
            logger.debug(
                "位置计算成功: (%.6f, %.6f), 精度: %.2f 米, 信标数: %d",
                position.latitude,
                position.longitude,
                position.accuracy,
                len(beacons),
            )
        self._publish(LocationUpdate(position=position, beacons=beacons, error=None))
