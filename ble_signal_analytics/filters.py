from __future__ import annotations

import math
import time
from collections import deque
from typing import Deque, Optional

import numpy as np

from .models import (
    EstimatorState,
    EstimatorStats,
    FilteredSignal,
    SmoothedDistance,
    SmootherStats,
    WeightedMeasurement,
    WindowState,
)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class SignalEstimator:
    """
    RSSI 一维卡尔曼滤波（常量状态模型，无运动模型）

    预测: x = x, P = P + Q
    门限: |z - x| > 3 * sqrt(P + R) 视为异常值，不更新状态
    更新: K = P / (P + R), x = x + K (z - x), P = (1 - K) P
    """

    def __init__(
        self,
        process_noise: float = 0.1,
        measurement_noise: float = 4.0,
        initial_uncertainty: float = 1.0,
        min_rssi: int = -100,
        max_rssi: int = 20,
        max_covariance: float = 25.0,
    ):
        self.process_noise = process_noise  # Q
        self.measurement_noise = measurement_noise  # R
        self.initial_uncertainty = initial_uncertainty  # P0
        self.min_rssi = min_rssi
        self.max_rssi = max_rssi
        # 经验上的协方差上限，用于置信度归一化
        self.max_covariance = max_covariance
        self.reset()

    def reset(self) -> None:
        """清空状态（信标会话切换时调用）"""
        self.estimated_rssi = 0.0
        self.error_covariance = self.initial_uncertainty
        self.initialized = False
        self.measurement_count = 0
        self.last_timestamp: Optional[float] = None

        self.total_measurements = 0
        self.outlier_count = 0
        self.average_error = 0.0
        self._raw_mean = 0.0

    def estimate(self, raw_signal: int, timestamp: Optional[float] = None) -> FilteredSignal:
        self.total_measurements += 1
        self.last_timestamp = timestamp if timestamp is not None else _monotonic_ms()

        if not self._in_range(raw_signal):
            self.outlier_count += 1
            return self._outlier_result()

        if not self.initialized:
            # 首个有效样本直接作为估计值；若它远离真实值，后续样本可能一直被门限拒绝，
            # 只能通过 reset() 恢复
            self.estimated_rssi = float(raw_signal)
            self.error_covariance = self.initial_uncertainty
            self.initialized = True
            self.measurement_count = 1
            self._raw_mean = float(raw_signal)
            # 单个样本置信度固定为 0.5
            return FilteredSignal(
                value=self.estimated_rssi,
                confidence=0.5,
                is_outlier=False,
                improvement=0.0,
                state=self.state(),
            )

        # 预测
        predicted = self.estimated_rssi
        predicted_covariance = self.error_covariance + self.process_noise

        # 3-sigma 门限
        innovation = raw_signal - predicted
        if abs(innovation) > 3.0 * math.sqrt(predicted_covariance + self.measurement_noise):
            self.outlier_count += 1
            return self._outlier_result()

        # 更新
        gain = predicted_covariance / (predicted_covariance + self.measurement_noise)
        self.estimated_rssi = predicted + gain * innovation
        self.error_covariance = (1.0 - gain) * predicted_covariance
        self.measurement_count += 1

        self._raw_mean += (raw_signal - self._raw_mean) / self.measurement_count
        improvement = self._improvement(raw_signal)

        n = self.measurement_count - 1
        self.average_error = abs(innovation) if n <= 1 else (self.average_error * (n - 1) + abs(innovation)) / n

        return FilteredSignal(
            value=self.estimated_rssi,
            confidence=self.confidence(),
            is_outlier=False,
            improvement=improvement,
            state=self.state(gain),
        )

    def confidence(self) -> float:
        """协方差越小置信度越高，另按已接受样本数给予最多 0.5 的加成"""
        if not self.initialized:
            return 0.0
        normalized = float(np.clip(self.error_covariance / self.max_covariance, 0.0, 1.0))
        count_bonus = float(np.clip(self.measurement_count / 10.0, 0.0, 0.5))
        return float(np.clip((1.0 - normalized) + count_bonus, 0.0, 1.0))

    def state(self, gain: Optional[float] = None) -> EstimatorState:
        if gain is None:
            p = self.error_covariance
            gain = p / (p + self.measurement_noise) if p > 0 else 0.0
        return EstimatorState(
            estimate=self.estimated_rssi,
            error_covariance=self.error_covariance,
            gain=gain,
            process_noise=self.process_noise,
            measurement_noise=self.measurement_noise,
            sample_count=self.measurement_count,
        )

    def get_statistics(self) -> EstimatorStats:
        total = self.total_measurements
        return EstimatorStats(
            total_measurements=total,
            accepted_measurements=self.measurement_count,
            outlier_count=self.outlier_count,
            outlier_rate=self.outlier_count / total if total > 0 else 0.0,
            average_error=self.average_error,
            current_estimate=self.estimated_rssi,
            error_covariance=self.error_covariance,
            confidence=self.confidence(),
        )

    # ---- internals ----
    def _in_range(self, raw_signal: float) -> bool:
        try:
            value = float(raw_signal)
        except (TypeError, ValueError):
            return False
        return math.isfinite(value) and self.min_rssi <= value <= self.max_rssi

    def _outlier_result(self) -> FilteredSignal:
        return FilteredSignal(
            value=self.estimated_rssi,
            confidence=self.confidence(),
            is_outlier=True,
            improvement=0.0,
            state=self.state(),
        )

    def _improvement(self, raw_signal: int) -> float:
        # 相对已接受原始样本均值，滤波输出比原始值偏差减少的比例
        if self.measurement_count <= 2:
            return 0.0
        raw_deviation = abs(raw_signal - self._raw_mean)
        filtered_deviation = abs(self.estimated_rssi - self._raw_mean)
        if raw_deviation <= 0:
            return 0.0
        return float(np.clip((raw_deviation - filtered_deviation) / raw_deviation, 0.0, 1.0))


class DistanceSmoother:
    """
    距离加权滑动平均

    窗口按新到旧排列，样本权重 = 置信度 * exp(-age / half_life) * decay，
    计算均值/方差时再乘以 decay ** index。
    """

    def __init__(
        self,
        window_size: int = 10,
        decay_factor: float = 0.9,
        outlier_threshold: float = 2.0,
        half_life_seconds: float = 30.0,
        min_distance: float = 0.0,
        max_distance: float = 100.0,
    ):
        self.window_size = max(int(window_size), 1)
        self.decay_factor = decay_factor
        self.outlier_threshold = outlier_threshold
        self.half_life_seconds = half_life_seconds
        self.min_distance = min_distance
        self.max_distance = max_distance
        self.reset()

    def reset(self) -> None:
        self.window: Deque[WeightedMeasurement] = deque(maxlen=self.window_size)
        self.current_average = 0.0
        self.variance = math.inf
        self.is_stable = False
        self._latest_timestamp: Optional[float] = None

        self.total_measurements = 0
        self.accepted_measurements = 0
        self.outliers_rejected = 0

    def smooth(
        self, distance: float, timestamp: Optional[float] = None, confidence: float = 1.0
    ) -> SmoothedDistance:
        self.total_measurements += 1
        if timestamp is None:
            timestamp = _monotonic_ms()

        if not self._is_valid(distance):
            return self._result(is_outlier=True)

        if len(self.window) >= 3 and self._is_outlier(distance):
            self.outliers_rejected += 1
            return self._result(is_outlier=True)

        self._add(float(distance), float(timestamp), float(confidence))
        self._recompute()
        self.accepted_measurements += 1
        return self._result(is_outlier=False)

    def stability_score(self) -> float:
        if not self.is_stable:
            return 0.5
        return 1.0 - float(np.clip(self.variance / 10.0, 0.0, 1.0))

    def confidence(self) -> float:
        return 0.9 if self.is_stable else 0.6

    def window_state(self) -> WindowState:
        return WindowState(size=len(self.window), average=self.current_average, variance=self.variance)

    def get_statistics(self) -> SmootherStats:
        total = self.total_measurements
        return SmootherStats(
            window_size=len(self.window),
            total_measurements=total,
            accepted_measurements=self.accepted_measurements,
            outliers_rejected=self.outliers_rejected,
            current_average=self.current_average,
            variance=self.variance,
            stability_score=self.stability_score(),
            effectiveness=self.accepted_measurements / total if total > 0 else 0.0,
        )

    # ---- internals ----
    def _is_valid(self, distance: float) -> bool:
        try:
            value = float(distance)
        except (TypeError, ValueError):
            return False
        return math.isfinite(value) and self.min_distance <= value <= self.max_distance

    def _is_outlier(self, distance: float) -> bool:
        # 少于 2 个样本时方差视为无穷大，门限不会触发
        if not math.isfinite(self.variance):
            return False
        deviation = abs(distance - self.current_average)
        return deviation > self.outlier_threshold * math.sqrt(self.variance)

    def _add(self, distance: float, timestamp: float, confidence: float) -> None:
        if self._latest_timestamp is None or timestamp > self._latest_timestamp:
            self._latest_timestamp = timestamp
        age_seconds = max(self._latest_timestamp - timestamp, 0.0) / 1000.0
        weight = confidence * math.exp(-age_seconds / self.half_life_seconds) * self.decay_factor
        # deque(maxlen) 在左侧插入时自动丢弃最旧的样本
        self.window.appendleft(
            WeightedMeasurement(value=distance, timestamp=timestamp, confidence=confidence, weight=weight)
        )

    def _recompute(self) -> None:
        values = np.array([m.value for m in self.window], dtype=float)
        weights = np.array([m.weight for m in self.window], dtype=float)
        weights = weights * np.power(self.decay_factor, np.arange(len(values)))
        if weights.sum() <= 0:
            weights = np.ones_like(values)

        self.current_average = float(np.average(values, weights=weights))
        if len(values) < 2:
            self.variance = math.inf
        else:
            self.variance = float(np.average((values - self.current_average) ** 2, weights=weights))
        self.is_stable = self._check_stability()

    def _check_stability(self) -> bool:
        if len(self.window) < self.window_size / 2:
            return False
        if self.current_average <= 0 or not math.isfinite(self.variance):
            return False
        return math.sqrt(self.variance) / self.current_average < 0.1

    def _result(self, is_outlier: bool) -> SmoothedDistance:
        return SmoothedDistance(
            value=self.current_average,
            confidence=self.confidence(),
            is_outlier=is_outlier,
            stability_score=self.stability_score(),
            is_stable=self.is_stable,
            window=self.window_state(),
        )
