from __future__ import annotations

import threading
from typing import Generic, Iterator, Optional, TypeVar

from .exceptions import SlotClosedError


T = TypeVar("T")


class StateSlot(Generic[T]):
    """
    单写多读的最新值广播槽

    - 只保存最新值，发布方从不等待读者
    - 新订阅者立即拿到当前值，之后按发布顺序拿到后续值
    - 读得慢的订阅者只会错过中间值（合并），不会反压发布方
    """

    def __init__(self, initial: T):
        self._cond = threading.Condition()
        self._value = initial
        self._version = 0
        self._closed = False

    @property
    def value(self) -> T:
        with self._cond:
            return self._value

    @property
    def version(self) -> int:
        with self._cond:
            return self._version

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def publish(self, value: T) -> None:
        with self._cond:
            if self._closed:
                raise SlotClosedError("状态槽已关闭")
            self._value = value
            self._version += 1
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def subscribe(self) -> "Subscription[T]":
        return Subscription(self)

    def _wait_newer(self, seen: int, timeout: Optional[float], sub: "Subscription[T]"):
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._version > seen or self._closed or sub.closed, timeout
            )
            if not ready:
                raise TimeoutError("等待状态更新超时")
            if sub.closed:
                raise SlotClosedError("订阅已关闭")
            if self._version > seen:
                return self._version, self._value
            raise SlotClosedError("状态槽已关闭")


class Subscription(Generic[T]):
    """StateSlot 的一个读者；第一次 get() 返回订阅时刻的最新值"""

    def __init__(self, slot: StateSlot[T]):
        self._slot = slot
        self._closed = False
        # 订阅时刻的版本减一，保证第一次读取立即返回当前值
        self._seen = slot.version - 1

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, timeout: Optional[float] = None) -> T:
        self._seen, value = self._slot._wait_newer(self._seen, timeout, self)
        return value

    def close(self) -> None:
        self._closed = True
        with self._slot._cond:
            self._slot._cond.notify_all()

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.get()
            except SlotClosedError:
                return
