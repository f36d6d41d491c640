from __future__ import annotations

import logging
import queue
import threading
from typing import Iterable, Iterator, List, Optional

from .exceptions import ScannerError
from .models import BeaconObservation, ScanBatch, now_millis


logger = logging.getLogger(__name__)


class _End:
    pass


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class BatchSubscription:
    """扫描批次的订阅：每个订阅者独立的 FIFO 队列，批次不合并"""

    def __init__(self, scanner: "BeaconScanner"):
        self._scanner = scanner
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: object) -> None:
        if not self._closed:
            self._queue.put(item)

    def next(self, timeout: Optional[float] = None) -> Optional[ScanBatch]:
        """
        取下一批观测；订阅结束返回 None
        上游失败时抛出 ScannerError，超时抛出 queue.Empty
        """
        if self._closed and self._queue.empty():
            return None
        item = self._queue.get(timeout=timeout)
        if isinstance(item, _End):
            self._closed = True
            return None
        if isinstance(item, _Failure):
            if isinstance(item.error, ScannerError):
                raise item.error
            raise ScannerError(str(item.error)) from item.error
        return item  # type: ignore[return-value]

    def close(self) -> None:
        if self._closed:
            return
        self._scanner._detach(self)
        self._closed = True
        # 唤醒阻塞在 next() 上的消费者
        self._queue.put(_End())

    def __iter__(self) -> Iterator[ScanBatch]:
        while True:
            batch = self.next()
            if batch is None:
                return
            yield batch


class BeaconScanner:
    """
    信标观测源

    基类本身是内存实现：宿主在自己的扫描回调里调用 emit() 推送批次，
    用 fail() 报告上游故障。子类通过 _on_start/_on_stop/_on_release 挂接真实硬件或网络。
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[BatchSubscription] = []
        self._scanning = False
        self._released = False

    # ---------- Lifecycle ----------
    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def released(self) -> bool:
        return self._released

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def start_scanning(self) -> None:
        with self._lock:
            if self._released:
                raise ScannerError("扫描器已释放")
            if self._scanning:
                return
            self._scanning = True
        logger.info("开始扫描信标")
        self._on_start()

    def stop_scanning(self) -> None:
        with self._lock:
            if not self._scanning:
                return
            self._scanning = False
        logger.info("停止扫描信标")
        self._on_stop()

    def cleanup(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            was_scanning = self._scanning
            self._scanning = False
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        if was_scanning:
            self._on_stop()
        for sub in subscribers:
            sub._put(_End())
        self._on_release()
        logger.info("扫描器已释放")

    # ---------- Stream ----------
    def subscribe(self) -> BatchSubscription:
        with self._lock:
            if self._released:
                raise ScannerError("扫描器已释放")
            sub = BatchSubscription(self)
            self._subscribers.append(sub)
            return sub

    def _detach(self, sub: BatchSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def emit(self, observations: Iterable[BeaconObservation], timestamp: Optional[int] = None) -> bool:
        """
        推送一批观测；未在扫描时丢弃并返回 False
        timestamp 为采集时间（毫秒），缺省取调用时刻
        """
        batch = ScanBatch(
            observations=tuple(observations),
            timestamp=timestamp if timestamp is not None else now_millis(),
        )
        with self._lock:
            if not self._scanning:
                logger.debug("扫描未开启，丢弃 %d 个信标观测", len(batch.observations))
                return False
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub._put(batch)
        return True

    def fail(self, error: BaseException) -> None:
        """向所有订阅者报告上游故障"""
        logger.error("信标扫描源故障: %s", error)
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub._put(_Failure(error))

    # ---------- Hooks ----------
    def _on_start(self) -> None:
        pass

    def _on_stop(self) -> None:
        pass

    def _on_release(self) -> None:
        pass
