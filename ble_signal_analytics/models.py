from __future__ import annotations

import math
import time
from dataclasses import dataclass, asdict, field
from typing import Optional, Dict, Any, Tuple
from enum import Enum


INVALID_DISTANCE = -1.0


def _finite_or_none(value: Any) -> Any:
    # 严格 JSON 不支持 inf/nan，统一转为 None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _finite_or_none(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_finite_or_none(v) for v in value]
    return value


@dataclass(frozen=True)
class RawSample:
    """
    单次信标检测事件（由上游测距环节产生）
    """

    rssi: int  # dBm, 有效范围约 -100 ~ +20
    distance: float  # 上游测距结果, 米, >= 0
    timestamp: float  # 单调时钟, 毫秒
    tx_power: Optional[int] = None  # dBm, 信标广播的 1 米发射功率
    beacon_id: str = "default"


@dataclass(frozen=True)
class EstimatorState:
    estimate: float
    error_covariance: float
    gain: float
    process_noise: float
    measurement_noise: float
    sample_count: int = 0

    def summary(self) -> str:
        return (
            f"Estimate: {self.estimate:.2f}dBm | "
            f"Covariance: {self.error_covariance:.3f} | "
            f"Gain: {self.gain:.3f}"
        )


@dataclass(frozen=True)
class FilteredSignal:
    """卡尔曼滤波后的 RSSI"""

    value: float
    confidence: float
    is_outlier: bool
    improvement: float
    state: EstimatorState

    def as_int(self) -> int:
        return int(round(self.value))

    def is_reliable(self) -> bool:
        return self.confidence >= 0.7 and not self.is_outlier

    def has_significant_improvement(self) -> bool:
        return self.improvement >= 0.15


@dataclass(frozen=True)
class EstimatorStats:
    total_measurements: int
    accepted_measurements: int
    outlier_count: int
    outlier_rate: float
    average_error: float
    current_estimate: float
    error_covariance: float
    confidence: float

    def effectiveness(self) -> float:
        outlier_handling = 1.0 - min(max(self.outlier_rate, 0.0), 1.0)
        if self.error_covariance < 5.0:
            stability = 1.0
        else:
            stability = min(max(5.0 / self.error_covariance, 0.0), 1.0)
        return outlier_handling * 0.3 + self.confidence * 0.4 + stability * 0.3

    def report(self) -> str:
        return "\n".join(
            [
                "Kalman Filter Performance:",
                f"  Total Measurements: {self.total_measurements}",
                f"  Accepted: {self.accepted_measurements}",
                f"  Outliers Rejected: {self.outlier_count} ({self.outlier_rate * 100:.1f}%)",
                f"  Average Error: {self.average_error:.2f}dBm",
                f"  Current Estimate: {self.current_estimate:.2f}dBm",
                f"  Confidence: {self.confidence * 100:.1f}%",
                f"  Effectiveness: {self.effectiveness() * 100:.1f}%",
            ]
        )


@dataclass(frozen=True)
class EnvironmentalFactors:
    temperature: Optional[float] = None  # 摄氏度
    humidity: Optional[float] = None  # 百分比
    interference: Optional[float] = None  # 干扰程度 0~1
    indoor: bool = True


class DistanceModel(Enum):
    STANDARD = "standard"
    ENHANCED_PATH_LOSS = "enhanced_path_loss"
    LOG_DISTANCE = "log_distance"
    EMPIRICAL = "empirical"
    FILTER_ENHANCED = "filter_enhanced"


@dataclass(frozen=True)
class DistanceEstimate:
    distance: float
    confidence: float
    model: DistanceModel
    rssi_used: float
    tx_power_used: float
    environmental_factors: Optional[EnvironmentalFactors] = None
    calibration_applied: bool = False

    @property
    def is_valid(self) -> bool:
        return self.distance != INVALID_DISTANCE


@dataclass(frozen=True)
class MultiModelDistance:
    best_estimate: DistanceEstimate
    all_estimates: Tuple[DistanceEstimate, ...]
    model_agreement: float

    @property
    def recommended_model(self) -> DistanceModel:
        return self.best_estimate.model


@dataclass(frozen=True)
class WeightedMeasurement:
    value: float
    timestamp: float
    confidence: float
    weight: float


@dataclass(frozen=True)
class WindowState:
    size: int
    average: float
    variance: float


@dataclass(frozen=True)
class SmoothedDistance:
    value: float
    confidence: float
    is_outlier: bool
    stability_score: float
    is_stable: bool
    window: WindowState


@dataclass(frozen=True)
class SmootherStats:
    window_size: int
    total_measurements: int
    accepted_measurements: int
    outliers_rejected: int
    current_average: float
    variance: float
    stability_score: float
    effectiveness: float


@dataclass(frozen=True)
class SignalMeasurement:
    """历史缓冲区中的一条记录"""

    rssi: int
    distance: float
    timestamp: float
    tx_power: Optional[int] = None
    beacon_id: str = "default"

    @classmethod
    def from_sample(cls, sample: RawSample) -> "SignalMeasurement":
        return cls(
            rssi=sample.rssi,
            distance=sample.distance,
            timestamp=sample.timestamp,
            tx_power=sample.tx_power,
            beacon_id=sample.beacon_id,
        )


@dataclass(frozen=True)
class QualityScore:
    strength_consistency: float
    distance_reliability: float
    temporal_stability: float
    interference_level: float  # 1.0 表示无干扰
    overall_reliability: float
    measurement_count: int
    window_ms: float

    @classmethod
    def empty(cls) -> "QualityScore":
        return cls(0.0, 0.0, 0.0, 0.0, 0.0, 0, 0.0)

    @classmethod
    def insufficient(cls, count: int, window_ms: float = 0.0) -> "QualityScore":
        return cls(0.5, 0.5, 0.5, 0.5, 0.5, count, window_ms)


@dataclass(frozen=True)
class ReliabilityScore:
    overall: int  # 0~100
    signal_strength: int
    proximity: int
    consistency: int
    risk_factors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EnrichedResult:
    """
    单次检测事件的完整分析结果
    """

    sample: RawSample
    filtered: FilteredSignal
    distance: DistanceEstimate
    smoothed: SmoothedDistance
    quality: QualityScore
    reliability: ReliabilityScore
    processed_at: float = field(default_factory=time.time)
    degraded: bool = False

    @property
    def beacon_id(self) -> str:
        return self.sample.beacon_id

    @classmethod
    def minimal(cls, sample: RawSample) -> "EnrichedResult":
        """分析失败时返回的最小结果，全部子结果取安全的零值"""
        return cls(
            sample=sample,
            filtered=FilteredSignal(0.0, 0.0, False, 0.0, EstimatorState(0.0, 0.0, 0.0, 0.0, 0.0)),
            distance=DistanceEstimate(0.0, 0.0, DistanceModel.STANDARD, 0, 0),
            smoothed=SmoothedDistance(0.0, 0.0, False, 0.0, False, WindowState(0, 0.0, 0.0)),
            quality=QualityScore.empty(),
            reliability=ReliabilityScore(0, 0, 0, 0),
            degraded=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        # 转换为可 JSON 序列化的字典（枚举取值，非有限浮点数为 None）
        d = asdict(self)
        d["distance"]["model"] = self.distance.model.value
        d["reliability"]["risk_factors"] = list(self.reliability.risk_factors)
        return _finite_or_none(d)


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AnalyticsEvent:
    beacon_id: str


@dataclass(frozen=True)
class BeaconProcessed(AnalyticsEvent):
    result: EnrichedResult


@dataclass(frozen=True)
class QualityAlert(AnalyticsEvent):
    message: str
    severity: AlertSeverity


@dataclass(frozen=True)
class AnalyticsReport:
    runtime_seconds: float
    samples_processed: int
    failures: int
    unique_beacons: int
    history_size: int
    estimator_stats: Dict[str, EstimatorStats]
    smoother_stats: Dict[str, SmootherStats]
    overall_quality: float

    @classmethod
    def empty(cls) -> "AnalyticsReport":
        return cls(0.0, 0, 0, 0, 0, {}, {}, 0.0)
