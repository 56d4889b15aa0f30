from __future__ import annotations

import itertools
import math
from collections import Counter, deque
from dataclasses import replace
from typing import Any, Deque, Dict, Optional, Tuple

import numpy as np

from .models import (
    INVALID_DISTANCE,
    DistanceEstimate,
    DistanceModel,
    EnvironmentalFactors,
    FilteredSignal,
    MultiModelDistance,
)


# 经验模型：RSSI 区间 -> 距离（米）
EMPIRICAL_BANDS: Tuple[Tuple[float, float], ...] = (
    (-50, 0.5),
    (-60, 1.0),
    (-70, 2.5),
    (-80, 5.0),
    (-90, 10.0),
)
EMPIRICAL_FALLBACK_DISTANCE = 20.0

# 各模型的基础置信度
MODEL_BASE_CONFIDENCE = {
    DistanceModel.ENHANCED_PATH_LOSS: 0.8,
    DistanceModel.LOG_DISTANCE: 0.7,
    DistanceModel.EMPIRICAL: 0.6,
}


class ReferencePowerCalibration:
    """
    多点标定：由 (RSSI, 上游测距距离) 反推 1 米处参考功率

    P_1m = rssi + 10 * n * log10(d)，取最近 max_points 个点的均值。
    """

    def __init__(
        self,
        path_loss_exponent: float = 2.2,
        max_points: int = 20,
        min_distance: float = 0.1,
        max_distance: float = 50.0,
    ):
        self.path_loss_exponent = path_loss_exponent
        self.min_distance = min_distance
        self.max_distance = max_distance
        self._points: Deque[float] = deque(maxlen=max_points)

    def add_point(self, rssi: float, distance: float) -> Optional[float]:
        """加入一个标定点，距离无效（<=0、超出可靠范围）时忽略"""
        if rssi == 0 or not math.isfinite(distance):
            return None
        if not self.min_distance <= distance <= self.max_distance:
            return None
        implied = rssi + 10.0 * self.path_loss_exponent * math.log10(distance)
        self._points.append(implied)
        return implied

    @property
    def reference_power(self) -> Optional[float]:
        if not self._points:
            return None
        return float(np.mean(self._points))

    def reset(self) -> None:
        self._points.clear()

    def __len__(self) -> int:
        return len(self._points)


class DistanceEstimator:
    """基于 RSSI 的多模型距离估算"""

    def __init__(
        self,
        default_tx_power: int = -59,
        path_loss_exponent: float = 2.2,
        outdoor_path_loss_exponent: float = 2.0,
        rssi_at_1m: int = -59,
        min_reliable_distance: float = 0.1,
        max_reliable_distance: float = 50.0,
        temperature_compensation: float = 0.02,
        calibration: Optional[ReferencePowerCalibration] = None,
    ):
        # 1米处的默认发射功率 (dBm)
        self.default_tx_power = default_tx_power
        # 路径损耗指数（室内 2.2，室外 2.0）
        self.path_loss_exponent = path_loss_exponent
        self.outdoor_path_loss_exponent = outdoor_path_loss_exponent
        self.rssi_at_1m = rssi_at_1m
        self.min_reliable_distance = min_reliable_distance
        self.max_reliable_distance = max_reliable_distance
        # 温度补偿 dBm/°C，以 20°C 为基准
        self.temperature_compensation = temperature_compensation
        self.calibration = calibration
        self._model_counts: Counter[DistanceModel] = Counter()

    def calibrate(self, rssi: float, distance: float) -> Optional[float]:
        if self.calibration is None:
            return None
        return self.calibration.add_point(rssi, distance)

    # ---- Models ----
    def estimate(
        self,
        signal: float,
        tx_power: Optional[int] = None,
        env: Optional[EnvironmentalFactors] = None,
    ) -> DistanceEstimate:
        """增强路径损耗模型: d = 10 ^ ((P_tx - rssi) / (10 * n))"""
        model = DistanceModel.ENHANCED_PATH_LOSS
        self._model_counts[model] += 1
        reference = self._reference_power(tx_power)
        if signal == 0:
            return self._invalid(model, reference, env)

        rssi = self._compensate(signal, env)
        n = self._exponent(env)
        distance, clamped = self._clamp_power(reference - rssi, n)
        return DistanceEstimate(
            distance=distance,
            confidence=self._confidence(model, rssi, clamped, env),
            model=model,
            rssi_used=rssi,
            tx_power_used=reference,
            environmental_factors=env,
            calibration_applied=self._uses_calibration(tx_power),
        )

    def estimate_log_distance(
        self,
        signal: float,
        tx_power: Optional[int] = None,
        env: Optional[EnvironmentalFactors] = None,
    ) -> DistanceEstimate:
        """对数距离模型：以 1 米处 RSSI 常量为锚点，发射功率偏差平移锚点"""
        model = DistanceModel.LOG_DISTANCE
        self._model_counts[model] += 1
        effective_tx = tx_power if tx_power is not None else self.default_tx_power
        if signal == 0:
            return self._invalid(model, effective_tx, env)

        anchor = self.rssi_at_1m + (effective_tx - self.default_tx_power)
        rssi = self._compensate(signal, env)
        n = self._exponent(env)
        distance, clamped = self._clamp_power(anchor - rssi, n)
        return DistanceEstimate(
            distance=distance,
            confidence=self._confidence(model, rssi, clamped, env),
            model=model,
            rssi_used=rssi,
            tx_power_used=effective_tx,
            environmental_factors=env,
            calibration_applied=False,
        )

    def estimate_empirical(
        self,
        signal: float,
        env: Optional[EnvironmentalFactors] = None,
    ) -> DistanceEstimate:
        """经验模型（现场测试得到的分段表），不做标定"""
        model = DistanceModel.EMPIRICAL
        self._model_counts[model] += 1
        if signal == 0:
            return self._invalid(model, self.default_tx_power, env)

        distance = EMPIRICAL_FALLBACK_DISTANCE
        for threshold, bucket in EMPIRICAL_BANDS:
            if signal > threshold:
                distance = bucket
                break
        distance = min(max(distance, self.min_reliable_distance), self.max_reliable_distance)
        return DistanceEstimate(
            distance=distance,
            confidence=self._confidence(model, signal, False, env),
            model=model,
            rssi_used=signal,
            tx_power_used=self.default_tx_power,
            environmental_factors=env,
            calibration_applied=False,
        )

    def estimate_filtered(
        self,
        filtered: FilteredSignal,
        tx_power: Optional[int] = None,
        env: Optional[EnvironmentalFactors] = None,
    ) -> DistanceEstimate:
        """
        使用卡尔曼滤波后的 RSSI 估算距离：
        - 滤波结果不可靠（置信度 < 0.7 或异常值）：回退为原始估算，置信度减半
        - 否则融合距离模型置信度与滤波置信度，并按改善程度加成
        """
        if not filtered.is_reliable():
            result = self.estimate(filtered.as_int(), tx_power, env)
            if not result.is_valid:
                return result
            return replace(result, confidence=result.confidence * 0.5)

        result = self.estimate(filtered.value, tx_power, env)
        if not result.is_valid:
            return result
        combined = (result.confidence + filtered.confidence) / 2.0 + 0.1 * filtered.improvement
        self._model_counts[DistanceModel.FILTER_ENHANCED] += 1
        return replace(
            result,
            confidence=float(np.clip(combined, 0.0, 1.0)),
            model=DistanceModel.FILTER_ENHANCED,
        )

    def estimate_multi_model(
        self,
        signal: float,
        tx_power: Optional[int] = None,
        env: Optional[EnvironmentalFactors] = None,
    ) -> MultiModelDistance:
        estimates = (
            self.estimate(signal, tx_power, env),
            self.estimate_log_distance(signal, tx_power, env),
            self.estimate_empirical(signal, env),
        )
        # 置信度相同时保留靠前的模型
        best = max(estimates, key=lambda e: e.confidence)
        return MultiModelDistance(
            best_estimate=best,
            all_estimates=estimates,
            model_agreement=self.model_agreement(estimates),
        )

    @staticmethod
    def model_agreement(estimates) -> float:
        """两两比较各模型距离，取 min/max 比值的均值（1.0 表示完全一致）"""
        distances = [e.distance for e in estimates if e.is_valid and e.distance > 0]
        if len(distances) < 2:
            return 0.0
        ratios = [min(a, b) / max(a, b) for a, b in itertools.combinations(distances, 2)]
        return float(np.mean(ratios))

    def get_statistics(self) -> Dict[str, Any]:
        calibration = self.calibration
        return {
            "model_counts": {m.value: c for m, c in self._model_counts.items()},
            "calibration_points": len(calibration) if calibration is not None else 0,
            "reference_power": calibration.reference_power if calibration is not None else None,
            "default_tx_power": self.default_tx_power,
            "path_loss_exponent": self.path_loss_exponent,
        }

    # ---- Helpers ----
    def _uses_calibration(self, tx_power: Optional[int]) -> bool:
        return (
            tx_power is None
            and self.calibration is not None
            and self.calibration.reference_power is not None
        )

    def _reference_power(self, tx_power: Optional[int]) -> float:
        # 信标广播的发射功率优先，其次为标定值，最后为默认值
        if tx_power is not None:
            return float(tx_power)
        if self._uses_calibration(tx_power):
            return self.calibration.reference_power
        return float(self.default_tx_power)

    def _compensate(self, signal: float, env: Optional[EnvironmentalFactors]) -> float:
        if env is None or env.temperature is None:
            return float(signal)
        return float(signal) + (env.temperature - 20.0) * self.temperature_compensation

    def _exponent(self, env: Optional[EnvironmentalFactors]) -> float:
        if env is not None and not env.indoor:
            return self.outdoor_path_loss_exponent
        return self.path_loss_exponent

    def _clamp_power(self, path_loss: float, n: float) -> Tuple[float, bool]:
        # 超出范围的指数最终都会被截断，这里先限制避免溢出
        exponent = float(np.clip(path_loss / (10.0 * n), -12.0, 12.0))
        raw = math.pow(10.0, exponent)
        distance = min(max(raw, self.min_reliable_distance), self.max_reliable_distance)
        return distance, distance != raw

    def _confidence(
        self,
        model: DistanceModel,
        rssi: float,
        clamped: bool,
        env: Optional[EnvironmentalFactors],
    ) -> float:
        # 信号越弱置信度越低：-70dBm 以上为 1.0，-100dBm 降至 0.5
        strength = float(np.clip(1.0 - (-70.0 - rssi) / 60.0, 0.5, 1.0))
        confidence = MODEL_BASE_CONFIDENCE[model] * strength
        if clamped:
            confidence *= 0.8
        if env is not None and env.interference is not None:
            confidence *= 1.0 - 0.5 * float(np.clip(env.interference, 0.0, 1.0))
        return float(np.clip(confidence, 0.0, 1.0))

    def _invalid(
        self, model: DistanceModel, tx_power: float, env: Optional[EnvironmentalFactors]
    ) -> DistanceEstimate:
        return DistanceEstimate(
            distance=INVALID_DISTANCE,
            confidence=0.0,
            model=model,
            rssi_used=0,
            tx_power_used=tx_power,
            environmental_factors=env,
            calibration_applied=False,
        )
