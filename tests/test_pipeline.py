import threading

import pytest

from ble_signal_analytics.config_manager import ConfigManager
from ble_signal_analytics.filters import SignalEstimator
from ble_signal_analytics.models import AlertSeverity, BeaconProcessed, QualityAlert, RawSample
from ble_signal_analytics.pipeline import AnalyticsPipeline


SCENARIO = [(-65, 3.0), (-67, 3.1), (-63, 2.9), (-66, 3.0), (-64, 3.05)]


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _samples(readings, beacon_id: str = "b-1", start: float = 0.0, spacing_ms: float = 1000.0):
    return [
        RawSample(rssi=rssi, distance=distance, timestamp=start + i * spacing_ms, beacon_id=beacon_id)
        for i, (rssi, distance) in enumerate(readings)
    ]


def _make_pipeline(tmp_path, **pipeline_overrides) -> AnalyticsPipeline:
    config = ConfigManager(str(tmp_path / "config.yaml"))
    config.config["pipeline"].update(pipeline_overrides)
    return AnalyticsPipeline.from_config(config)


def test_stable_readings_produce_reliable_result() -> None:
    pipeline = AnalyticsPipeline()

    results = [pipeline.process(s) for s in _samples(SCENARIO)]
    final = results[-1]

    assert final.degraded is False
    assert abs(final.smoothed.value - 3.0) < 0.5
    assert final.quality.overall_reliability > 0.6
    assert final.quality.measurement_count == 5
    assert not any(r.filtered.is_outlier for r in results)
    assert pipeline.latest("b-1") is final


def test_failure_returns_degraded_minimal_result(monkeypatch) -> None:
    pipeline = AnalyticsPipeline()

    def broken(self, raw_signal, timestamp=None):
        raise RuntimeError("estimator failure")

    monkeypatch.setattr(SignalEstimator, "estimate", broken)
    sub = pipeline.subscribe()
    sample = RawSample(rssi=-65, distance=3.0, timestamp=0.0, beacon_id="b-1")
    result = pipeline.process(sample)

    assert result.degraded is True
    assert sub.drain() == [result]
    assert pipeline.latest("b-1") is result
    assert result.sample == sample
    assert result.quality.overall_reliability == 0.0
    assert result.reliability.overall == 0
    report = pipeline.get_statistics()
    assert report.failures == 1
    assert report.samples_processed == 0


def test_subscribers_receive_results_and_replay_latest() -> None:
    pipeline = AnalyticsPipeline()
    sub = pipeline.subscribe()
    events = pipeline.subscribe_events()

    results = [pipeline.process(s) for s in _samples(SCENARIO[:3])]
    late = pipeline.subscribe()

    assert sub.drain() == results
    assert late.get(timeout=0.1) is results[-1]
    processed = events.drain()
    assert len(processed) == 3
    assert all(isinstance(e, BeaconProcessed) for e in processed)
    assert processed[-1].result is results[-1]


def test_beacons_keep_independent_state() -> None:
    pipeline = AnalyticsPipeline()
    for s in _samples([(-70, 3.0)] * 5, beacon_id="b-1"):
        pipeline.process(s)

    other = pipeline.process(RawSample(rssi=-50, distance=1.0, timestamp=5000.0, beacon_id="b-2"))

    assert other.filtered.value == -50.0
    assert other.filtered.confidence == 0.5
    assert other.quality.measurement_count == 1
    assert pipeline.get_statistics().unique_beacons == 2


def test_reset_restores_fresh_estimator() -> None:
    pipeline = AnalyticsPipeline()
    for s in _samples(SCENARIO):
        pipeline.process(s)

    pipeline.reset("b-1")
    result = pipeline.process(RawSample(rssi=-60, distance=2.0, timestamp=10_000.0, beacon_id="b-1"))

    assert result.filtered.confidence == 0.5
    assert result.filtered.improvement == 0.0
    assert result.smoothed.window.size == 1
    assert result.quality.measurement_count == 1


def test_latest_results_expire_after_ttl() -> None:
    clock = FakeClock()
    pipeline = AnalyticsPipeline(clock=clock)
    pipeline.process(RawSample(rssi=-65, distance=3.0, timestamp=0.0, beacon_id="b-1"))

    assert pipeline.latest("b-1") is not None
    clock.now = pipeline.result_ttl_seconds + 1.0

    assert pipeline.latest("b-1") is None
    assert pipeline.latest_results() == {}
    assert pipeline.get_statistics().unique_beacons == 0


def test_tracked_beacons_are_bounded(tmp_path) -> None:
    pipeline = _make_pipeline(tmp_path, max_tracked_beacons=2)

    for i, beacon_id in enumerate(["b-1", "b-2", "b-3"]):
        pipeline.process(RawSample(rssi=-65, distance=3.0, timestamp=i * 1000.0, beacon_id=beacon_id))

    assert set(pipeline.latest_results()) == {"b-2", "b-3"}
    assert pipeline.get_statistics().unique_beacons == 3


def test_filter_state_survives_more_beacons_than_tracked(tmp_path) -> None:
    pipeline = _make_pipeline(tmp_path, max_tracked_beacons=2)
    confidences = []

    for round_ in range(5):
        for i, beacon_id in enumerate(["b-1", "b-2", "b-3"]):
            sample = RawSample(rssi=-65, distance=3.0, timestamp=round_ * 3000.0 + i * 1000.0, beacon_id=beacon_id)
            result = pipeline.process(sample)
            if beacon_id == "b-1":
                confidences.append(result.filtered.confidence)

    assert confidences[0] == 0.5
    assert all(c > 0.5 for c in confidences[1:])
    assert pipeline.get_statistics().estimator_stats["b-1"].total_measurements == 5


def test_session_in_use_is_not_replaced(tmp_path) -> None:
    pipeline = _make_pipeline(tmp_path, max_tracked_beacons=1)
    held = pipeline._session("b-1")

    with held.lock:
        pipeline.process(RawSample(rssi=-65, distance=3.0, timestamp=0.0, beacon_id="b-2"))
        pipeline.process(RawSample(rssi=-65, distance=3.0, timestamp=1000.0, beacon_id="b-3"))

    assert pipeline._session("b-1") is held


def test_concurrent_beacons_are_processed_independently() -> None:
    pipeline = AnalyticsPipeline()
    beacon_ids = [f"b-{i}" for i in range(4)]

    def worker(beacon_id: str) -> None:
        for s in _samples([(-65, 3.0)] * 50, beacon_id=beacon_id):
            pipeline.process(s)

    threads = [threading.Thread(target=worker, args=(b,)) for b in beacon_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    report = pipeline.get_statistics()
    assert report.samples_processed == 200
    assert report.failures == 0
    assert report.history_size == 200
    for beacon_id in beacon_ids:
        assert report.estimator_stats[beacon_id].total_measurements == 50
        assert pipeline.latest(beacon_id).filtered.value == pytest.approx(-65.0)


def test_unstable_readings_raise_quality_alert() -> None:
    pipeline = AnalyticsPipeline()
    events = pipeline.subscribe_events()

    for s in _samples([(-45, 1.0), (-95, 9.0)] * 3):
        pipeline.process(s)

    alerts = [e for e in events.drain() if isinstance(e, QualityAlert)]
    assert alerts
    assert alerts[0].beacon_id == "b-1"
    assert alerts[0].severity is AlertSeverity.HIGH


def test_pipeline_reads_quality_window_from_config(tmp_path) -> None:
    config = ConfigManager(str(tmp_path / "config.yaml"))
    config.config["quality"]["window_seconds"] = 2.0
    pipeline = AnalyticsPipeline.from_config(config)

    results = [pipeline.process(s) for s in _samples(SCENARIO)]

    assert pipeline.quality_window_ms == 2000.0
    assert results[-1].quality.measurement_count == 3
