import threading

from ble_signal_analytics.broadcast import ResultBroadcaster
from ble_signal_analytics.history import SampleHistory
from ble_signal_analytics.models import SignalMeasurement


def _measurement(timestamp: float, beacon_id: str = "b-1", rssi: int = -65) -> SignalMeasurement:
    return SignalMeasurement(rssi=rssi, distance=3.0, timestamp=timestamp, beacon_id=beacon_id)


def test_history_evicts_oldest_beyond_capacity() -> None:
    history = SampleHistory(max_size=3)
    for i in range(5):
        history.append(_measurement(i * 1000.0))

    snapshot = history.snapshot()

    assert len(history) == 3
    assert [m.timestamp for m in snapshot] == [2000.0, 3000.0, 4000.0]
    assert history.total_appended == 5


def test_history_window_filters_by_time_and_beacon() -> None:
    history = SampleHistory()
    for i in range(10):
        history.append(_measurement(i * 1000.0, beacon_id="b-1"))
        history.append(_measurement(i * 1000.0, beacon_id="b-2"))

    recent = history.window(3000.0, beacon_id="b-1")
    all_recent = history.window(3000.0, now=9000.0)

    assert [m.timestamp for m in recent] == [6000.0, 7000.0, 8000.0, 9000.0]
    assert all(m.beacon_id == "b-1" for m in recent)
    assert len(all_recent) == 8
    assert history.window(3000.0, beacon_id="missing") == []


def test_history_frame_and_clear() -> None:
    history = SampleHistory()
    history.append(_measurement(0.0, beacon_id="b-1"))
    history.append(_measurement(1000.0, beacon_id="b-2"))

    frame = history.to_frame()
    history.clear("b-1")

    assert list(frame.columns) == ["beacon_id", "rssi", "distance", "timestamp"]
    assert len(frame) == 2
    assert [m.beacon_id for m in history.snapshot()] == ["b-2"]
    history.clear()
    assert len(history) == 0


def test_new_subscriber_receives_last_value() -> None:
    broadcaster: ResultBroadcaster[int] = ResultBroadcaster(capacity=4)
    broadcaster.publish(1)
    broadcaster.publish(2)

    sub = broadcaster.subscribe()

    assert sub.get(timeout=0.1) == 2
    assert sub.get(timeout=0.01) is None


def test_slow_subscriber_drops_oldest() -> None:
    broadcaster: ResultBroadcaster[int] = ResultBroadcaster(capacity=2)
    sub = broadcaster.subscribe()

    for i in range(1, 6):
        broadcaster.publish(i)

    assert sub.drain() == [4, 5]
    assert sub.dropped == 3
    assert broadcaster.published == 5


def test_subscriber_receives_from_other_thread() -> None:
    broadcaster: ResultBroadcaster[str] = ResultBroadcaster()
    sub = broadcaster.subscribe()

    t = threading.Thread(target=broadcaster.publish, args=("hello",))
    t.start()
    received = sub.get(timeout=2.0)
    t.join()

    assert received == "hello"


def test_closed_subscription_stops_receiving() -> None:
    broadcaster: ResultBroadcaster[int] = ResultBroadcaster()
    sub = broadcaster.subscribe()

    sub.close()
    broadcaster.publish(1)

    assert broadcaster.subscriber_count == 0
    assert sub.get(timeout=0.01) is None


def test_failing_listener_does_not_reach_publisher() -> None:
    broadcaster: ResultBroadcaster[int] = ResultBroadcaster()
    seen = []

    def boom(item: int) -> None:
        raise RuntimeError("listener failure")

    broadcaster.add_listener(boom)
    broadcaster.add_listener(seen.append)
    broadcaster.publish(7)

    assert seen == [7]
    assert broadcaster.last == 7
