from __future__ import annotations

import allure

from towerline.core.bus import EventBus, queue_channel
from towerline.core.models import Authority

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Event Bus"),
]


def test_subscribers_receive_events_in_registration_order(bus: EventBus) -> None:
    seen: list[str] = []
    bus.subscribe("demo", lambda payload: seen.append(f"first:{payload}"))
    bus.subscribe("demo", lambda payload: seen.append(f"second:{payload}"))

    bus.publish("demo", 1)

    assert seen == ["first:1", "second:1"]


def test_events_published_by_handlers_are_delivered_after_current_event(bus: EventBus) -> None:
    seen: list[str] = []

    def chain(payload: str) -> None:
        seen.append(f"a:{payload}")
        bus.publish("b", payload)
        seen.append(f"a-done:{payload}")

    bus.subscribe("a", chain)
    bus.subscribe("a", lambda payload: seen.append(f"a2:{payload}"))
    bus.subscribe("b", lambda payload: seen.append(f"b:{payload}"))

    bus.publish("a", "x")

    assert seen == ["a:x", "a-done:x", "a2:x", "b:x"]
    assert bus.pending == 0


def test_failing_handler_does_not_stop_other_subscribers(bus: EventBus) -> None:
    seen: list[int] = []

    def broken(_payload: int) -> None:
        raise RuntimeError("boom")

    bus.subscribe("demo", broken)
    bus.subscribe("demo", seen.append)

    bus.publish("demo", 7)

    assert seen == [7]


def test_unsubscribe_and_once(bus: EventBus) -> None:
    seen: list[int] = []
    remove = bus.subscribe("demo", seen.append)
    bus.once("demo", lambda payload: seen.append(payload * 10))

    bus.publish("demo", 1)
    remove()
    bus.publish("demo", 2)

    assert seen == [1, 10]
    assert not bus.has_subscribers("demo")


def test_monitor_sees_every_delivery(bus: EventBus, recorder) -> None:
    bus.publish("one", 1)
    bus.publish("two", 2)

    assert recorder == [("one", 1), ("two", 2)]
    assert bus.delivered == 2


def test_queue_channel_names_depend_on_authority() -> None:
    assert queue_channel(Authority.PRIMARY, 15) == "queue.15.task"
    assert queue_channel(Authority.MIRROR, 15) == "mirror.queue.15.task"
