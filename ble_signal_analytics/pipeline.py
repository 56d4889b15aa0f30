from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .broadcast import ResultBroadcaster, Subscription
from .calculator import DistanceEstimator, ReferencePowerCalibration
from .config_manager import ConfigManager
from .filters import DistanceSmoother, SignalEstimator
from .history import SampleHistory
from .models import (
    AlertSeverity,
    AnalyticsEvent,
    AnalyticsReport,
    BeaconProcessed,
    EnrichedResult,
    EnvironmentalFactors,
    QualityAlert,
    RawSample,
    SignalMeasurement,
)
from .quality import QualityScorer


logger = logging.getLogger(__name__)

# 质量告警：窗口内样本足够且整体可靠性低于阈值
QUALITY_ALERT_THRESHOLD = 0.4
QUALITY_ALERT_MIN_SAMPLES = 5


@dataclass
class BeaconSession:
    """单个信标的滤波状态，仅由持有 lock 的线程修改"""

    beacon_id: str
    estimator: SignalEstimator
    smoother: DistanceSmoother
    distance_estimator: DistanceEstimator
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    last_seen: float = 0.0
    processed: int = 0

    def reset(self) -> None:
        self.estimator.reset()
        self.smoother.reset()
        if self.distance_estimator.calibration is not None:
            self.distance_estimator.calibration.reset()
        self.processed = 0


class AnalyticsPipeline:
    """
    信标分析流水线

    每次检测事件：卡尔曼滤波 -> 距离估算 -> 距离平滑 -> 写入历史
    -> 质量评估与可靠性评分 -> 组装结果并发布给订阅者。
    不同信标各自持有锁，可以并发处理。
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        environment: Optional[EnvironmentalFactors] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config_manager = config_manager
        if config_manager is not None:
            self._kalman_cfg = config_manager.get_kalman_config()
            self._smoother_cfg = config_manager.get_smoother_config()
            self._distance_cfg = config_manager.get_distance_config()
            quality_cfg = config_manager.get_quality_config()
            pipeline_cfg = config_manager.get_pipeline_config()
        else:
            self._kalman_cfg, self._smoother_cfg, self._distance_cfg = {}, {}, {}
            quality_cfg, pipeline_cfg = {}, {}

        self.environment = environment
        self._clock = clock

        self.quality_window_ms = float(quality_cfg.get("window_seconds", 30.0)) * 1000.0
        self.scorer = QualityScorer(
            window_ms=self.quality_window_ms,
            interference_threshold_dbm=float(quality_cfg.get("interference_threshold_dbm", 10.0)),
            max_expected_deviation=float(quality_cfg.get("max_expected_deviation", 2.0)),
        )
        self.history = SampleHistory(int(pipeline_cfg.get("history_size", 1000)))
        self.result_ttl_seconds = float(pipeline_cfg.get("result_ttl_seconds", 300.0))
        self.max_tracked_beacons = int(pipeline_cfg.get("max_tracked_beacons", 256))

        buffer_size = int(pipeline_cfg.get("subscriber_buffer", 64))
        self.results: ResultBroadcaster[EnrichedResult] = ResultBroadcaster(buffer_size)
        self.events: ResultBroadcaster[AnalyticsEvent] = ResultBroadcaster(buffer_size)

        # 注册表锁只保护字典的查找/创建/淘汰，不覆盖单个信标的处理
        self._registry_lock = threading.Lock()
        self._sessions: Dict[str, BeaconSession] = {}
        self._latest: "OrderedDict[str, Tuple[EnrichedResult, float]]" = OrderedDict()

        self._started_at = clock()
        self._stats_lock = threading.Lock()
        self._processed = 0
        self._failures = 0

    @classmethod
    def from_config(cls, config_manager: ConfigManager, **kwargs) -> "AnalyticsPipeline":
        return cls(config_manager=config_manager, **kwargs)

    # ---------- Core processing ----------
    def process(self, sample: RawSample) -> EnrichedResult:
        try:
            session = self._session(sample.beacon_id)
            with session.lock:
                result, alert = self._process_locked(session, sample)
            self._remember(result)
            self.results.publish(result)
            self.events.publish(BeaconProcessed(beacon_id=sample.beacon_id, result=result))
            if alert is not None:
                logger.warning("信号质量告警 [%s]: %s", alert.beacon_id, alert.message)
                self.events.publish(alert)
            with self._stats_lock:
                self._processed += 1
            return result
        except Exception as e:
            logger.exception("信标 %s 分析处理出错: %s", sample.beacon_id, e)
            with self._stats_lock:
                self._failures += 1
            result = EnrichedResult.minimal(sample)
            self._remember(result)
            self.results.publish(result)
            return result

    def _process_locked(
        self, session: BeaconSession, sample: RawSample
    ) -> Tuple[EnrichedResult, Optional[QualityAlert]]:
        filtered = session.estimator.estimate(sample.rssi, sample.timestamp)
        if not filtered.is_outlier:
            session.distance_estimator.calibrate(sample.rssi, sample.distance)

        distance = session.distance_estimator.estimate_filtered(
            filtered, sample.tx_power, self.environment
        )
        smoothed = session.smoother.smooth(distance.distance, sample.timestamp, distance.confidence)

        self.history.append(SignalMeasurement.from_sample(sample))
        window = self.history.window(
            self.quality_window_ms, now=sample.timestamp, beacon_id=sample.beacon_id
        )
        quality = self.scorer.assess(window, self.quality_window_ms, now=sample.timestamp)

        proximity = smoothed.value if smoothed.window.size > 0 else sample.distance
        reliability = self.scorer.reliability(sample.rssi, proximity, quality.overall_reliability)

        session.processed += 1
        session.last_seen = self._clock()

        result = EnrichedResult(
            sample=sample,
            filtered=filtered,
            distance=distance,
            smoothed=smoothed,
            quality=quality,
            reliability=reliability,
        )
        logger.debug(
            "信标 %s: RSSI %d -> %.2fdBm, 距离 %.2fm (平滑 %.2fm), 质量 %.2f",
            sample.beacon_id,
            sample.rssi,
            filtered.value,
            distance.distance,
            smoothed.value,
            quality.overall_reliability,
        )
        return result, self._quality_alert(sample.beacon_id, result)

    @staticmethod
    def _quality_alert(beacon_id: str, result: EnrichedResult) -> Optional[QualityAlert]:
        quality = result.quality
        if quality.measurement_count < QUALITY_ALERT_MIN_SAMPLES:
            return None
        if quality.overall_reliability >= QUALITY_ALERT_THRESHOLD:
            return None
        severity = AlertSeverity.HIGH if quality.overall_reliability < 0.2 else AlertSeverity.MEDIUM
        return QualityAlert(
            beacon_id=beacon_id,
            message=f"整体可靠性过低: {quality.overall_reliability:.2f}",
            severity=severity,
        )

    # ---------- Sessions ----------
    def _session(self, beacon_id: str) -> BeaconSession:
        with self._registry_lock:
            session = self._sessions.get(beacon_id)
            if session is None:
                session = self._new_session(beacon_id)
                self._sessions[beacon_id] = session
                logger.info("新建信标会话: %s", beacon_id)
            # 取出即刷新，保证处理中的会话不会被过期淘汰
            session.last_seen = self._clock()
            return session

    def _new_session(self, beacon_id: str) -> BeaconSession:
        k, s, d = self._kalman_cfg, self._smoother_cfg, self._distance_cfg
        path_loss_exponent = float(d.get("path_loss_exponent", 2.2))
        min_distance = float(d.get("min_reliable_distance", 0.1))
        max_distance = float(d.get("max_reliable_distance", 50.0))
        return BeaconSession(
            beacon_id=beacon_id,
            estimator=SignalEstimator(
                process_noise=float(k.get("process_noise", 0.1)),
                measurement_noise=float(k.get("measurement_noise", 4.0)),
                initial_uncertainty=float(k.get("initial_uncertainty", 1.0)),
            ),
            smoother=DistanceSmoother(
                window_size=int(s.get("window_size", 10)),
                decay_factor=float(s.get("decay_factor", 0.9)),
                outlier_threshold=float(s.get("outlier_threshold", 2.0)),
                half_life_seconds=float(s.get("half_life_seconds", 30.0)),
            ),
            distance_estimator=DistanceEstimator(
                default_tx_power=int(d.get("default_tx_power", -59)),
                path_loss_exponent=path_loss_exponent,
                rssi_at_1m=int(d.get("rssi_at_1m", -59)),
                min_reliable_distance=min_distance,
                max_reliable_distance=max_distance,
                calibration=ReferencePowerCalibration(
                    path_loss_exponent=path_loss_exponent,
                    min_distance=min_distance,
                    max_distance=max_distance,
                ),
            ),
            last_seen=self._clock(),
        )

    def reset(self, beacon_id: Optional[str] = None) -> None:
        """重置信标会话（不传 beacon_id 时重置全部）"""
        with self._registry_lock:
            if beacon_id is None:
                sessions = list(self._sessions.values())
                self._latest.clear()
            else:
                session = self._sessions.get(beacon_id)
                sessions = [session] if session is not None else []
                self._latest.pop(beacon_id, None)
        for session in sessions:
            with session.lock:
                session.reset()
        self.history.clear(beacon_id)
        logger.info("已重置信标会话: %s", beacon_id or "全部")

    # ---------- Latest results ----------
    def _remember(self, result: EnrichedResult) -> None:
        now = self._clock()
        with self._registry_lock:
            self._latest[result.beacon_id] = (result, now)
            self._latest.move_to_end(result.beacon_id)
            self._evict_locked(now)

    def _evict_locked(self, now: float) -> None:
        cutoff = now - self.result_ttl_seconds
        for key in [k for k, (_, seen) in self._latest.items() if seen < cutoff]:
            del self._latest[key]
        while len(self._latest) > self.max_tracked_beacons:
            self._latest.popitem(last=False)

        # 会话只按空闲时间过期，不按数量淘汰；正在处理的会话跳过
        stale = [
            k for k, s in self._sessions.items() if s.last_seen < cutoff and not s.lock.locked()
        ]
        for key in stale:
            del self._sessions[key]
            logger.info("信标会话过期: %s", key)

    def latest(self, beacon_id: str) -> Optional[EnrichedResult]:
        with self._registry_lock:
            entry = self._latest.get(beacon_id)
        if entry is None:
            return None
        result, seen = entry
        if self._clock() - seen > self.result_ttl_seconds:
            return None
        return result

    def latest_results(self) -> Dict[str, EnrichedResult]:
        now = self._clock()
        with self._registry_lock:
            self._evict_locked(now)
            return {k: r for k, (r, _) in self._latest.items()}

    # ---------- Subscribers ----------
    def subscribe(self) -> Subscription[EnrichedResult]:
        return self.results.subscribe()

    def subscribe_events(self) -> Subscription[AnalyticsEvent]:
        return self.events.subscribe()

    # ---------- Statistics ----------
    def get_statistics(self) -> AnalyticsReport:
        with self._registry_lock:
            sessions = list(self._sessions.values())
            latest = [r for r, _ in self._latest.values() if not r.degraded]

        estimator_stats, smoother_stats = {}, {}
        for session in sessions:
            with session.lock:
                estimator_stats[session.beacon_id] = session.estimator.get_statistics()
                smoother_stats[session.beacon_id] = session.smoother.get_statistics()

        with self._stats_lock:
            processed, failures = self._processed, self._failures

        overall = float(np.mean([r.quality.overall_reliability for r in latest])) if latest else 0.0
        return AnalyticsReport(
            runtime_seconds=self._clock() - self._started_at,
            samples_processed=processed,
            failures=failures,
            unique_beacons=len(sessions),
            history_size=len(self.history),
            estimator_stats=estimator_stats,
            smoother_stats=smoother_stats,
            overall_quality=overall,
        )

    get_report = get_statistics
