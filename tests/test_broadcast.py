from __future__ import annotations

import threading

import pytest

from beacon_locator.broadcast import StateSlot
from beacon_locator.exceptions import SlotClosedError


def test_new_subscriber_receives_current_value_immediately() -> None:
    slot = StateSlot("initial")
    assert slot.subscribe().get(timeout=0) == "initial"

    slot.publish("second")
    assert slot.subscribe().get(timeout=0) == "second"
    assert slot.value == "second"
    assert slot.version == 1


def test_subscribers_attached_at_different_times_share_latest_and_sequence() -> None:
    slot = StateSlot(0)
    slot.publish(1)
    early = slot.subscribe()
    slot.publish(2)
    late = slot.subscribe()

    assert early.get(timeout=1) == 2
    assert late.get(timeout=1) == 2

    slot.publish(3)
    assert early.get(timeout=1) == 3
    assert late.get(timeout=1) == 3


def test_slow_subscriber_only_sees_latest_value() -> None:
    slot = StateSlot(0)
    sub = slot.subscribe()
    assert sub.get(timeout=0) == 0

    for i in range(1, 6):
        slot.publish(i)

    assert sub.get(timeout=0) == 5
    with pytest.raises(TimeoutError):
        sub.get(timeout=0.05)


def test_blocked_reader_is_woken_by_publish() -> None:
    slot = StateSlot("a")
    sub = slot.subscribe()
    sub.get(timeout=0)
    received = []

    reader = threading.Thread(target=lambda: received.append(sub.get(timeout=2)))
    reader.start()
    slot.publish("b")
    reader.join(2)

    assert received == ["b"]


def test_close_delivers_final_value_then_ends_iteration() -> None:
    slot = StateSlot(0)
    sub = slot.subscribe()
    slot.publish(1)
    slot.close()

    assert list(sub) == [1]
    with pytest.raises(SlotClosedError):
        sub.get(timeout=0)
    with pytest.raises(SlotClosedError):
        slot.publish(2)
    assert slot.closed


def test_closing_subscription_unblocks_reader() -> None:
    slot = StateSlot(0)
    sub = slot.subscribe()
    sub.get(timeout=0)
    errors = []

    def read() -> None:
        try:
            sub.get(timeout=2)
        except SlotClosedError as e:
            errors.append(e)

    reader = threading.Thread(target=read)
    reader.start()
    sub.close()
    reader.join(2)

    assert len(errors) == 1
    # 其他订阅者不受影响
    assert slot.subscribe().get(timeout=0) == 0
