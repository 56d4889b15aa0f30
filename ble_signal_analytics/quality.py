from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .models import QualityScore, ReliabilityScore, SignalMeasurement


# 各质量维度所需的最少样本数，少于此数返回中性值 0.5
MIN_SAMPLES_STRENGTH = 3
MIN_SAMPLES_DISTANCE = 3
MIN_SAMPLES_TEMPORAL = 4
MIN_SAMPLES_INTERFERENCE = 5

NEUTRAL_SCORE = 0.5
MIN_INTERVAL_SECONDS = 0.001

# (阈值, 分数)，信号强度与距离分段评分
SIGNAL_STRENGTH_BANDS: Tuple[Tuple[float, float], ...] = (
    (-50, 1.0),
    (-70, 0.8),
    (-85, 0.6),
    (-95, 0.4),
)
PROXIMITY_BANDS: Tuple[Tuple[float, float], ...] = (
    (1.0, 1.0),
    (5.0, 0.8),
    (10.0, 0.6),
    (20.0, 0.4),
)
LOWEST_BAND_SCORE = 0.2


def measurements_to_frame(measurements: Iterable[SignalMeasurement]) -> pd.DataFrame:
    rows = [
        {
            "beacon_id": m.beacon_id,
            "rssi": float(m.rssi),
            "distance": float(m.distance),
            "timestamp": float(m.timestamp),
        }
        for m in measurements
    ]
    return pd.DataFrame(rows, columns=["beacon_id", "rssi", "distance", "timestamp"])


class QualityScorer:
    """
    信号质量多维评估

    - 信号强度一致性：1 - |std/mean|
    - 距离可靠性：1 - std/max_expected_deviation
    - 时间稳定性：相邻样本 1 / (1 + |ΔRSSI| / Δt) 的均值
    - 干扰程度：1 - 突变次数 / (n - 1)
    """

    def __init__(
        self,
        window_ms: float = 30_000.0,
        interference_threshold_dbm: float = 10.0,
        max_expected_deviation: float = 2.0,
    ):
        self.window_ms = window_ms
        self.interference_threshold_dbm = interference_threshold_dbm
        self.max_expected_deviation = max_expected_deviation
        self.assessments = 0
        self.insufficient_assessments = 0

    def assess(
        self,
        history: Iterable[SignalMeasurement],
        window_ms: Optional[float] = None,
        now: Optional[float] = None,
    ) -> QualityScore:
        window_ms = self.window_ms if window_ms is None else window_ms
        self.assessments += 1

        df = measurements_to_frame(history)
        if df.empty:
            return QualityScore.empty()

        # 以最新样本时间作为参考时刻
        reference = df["timestamp"].max() if now is None else now
        df = df[df["timestamp"] >= reference - window_ms].sort_values("timestamp", kind="stable")
        if df.empty:
            return QualityScore.empty()
        if len(df) < 2:
            self.insufficient_assessments += 1
            return QualityScore.insufficient(len(df), window_ms)

        strength = self.strength_consistency(df)
        distance = self.distance_reliability(df)
        temporal = self.temporal_stability(df)
        interference = self.interference_level(df)
        overall = strength * 0.25 + distance * 0.25 + temporal * 0.30 + interference * 0.20

        return QualityScore(
            strength_consistency=strength,
            distance_reliability=distance,
            temporal_stability=temporal,
            interference_level=interference,
            overall_reliability=float(overall),
            measurement_count=len(df),
            window_ms=window_ms,
        )

    # ---- Components ----
    @staticmethod
    def strength_consistency(df: pd.DataFrame) -> float:
        if len(df) < MIN_SAMPLES_STRENGTH:
            return NEUTRAL_SCORE
        mean = df["rssi"].mean()
        std = df["rssi"].std(ddof=0)
        cv = abs(std / mean) if mean != 0 else 1.0
        return float(1.0 - np.clip(cv, 0.0, 1.0))

    def distance_reliability(self, df: pd.DataFrame) -> float:
        if len(df) < MIN_SAMPLES_DISTANCE:
            return NEUTRAL_SCORE
        std = df["distance"].std(ddof=0)
        return float(1.0 - np.clip(std / self.max_expected_deviation, 0.0, 1.0))

    @staticmethod
    def temporal_stability(df: pd.DataFrame) -> float:
        if len(df) < MIN_SAMPLES_TEMPORAL:
            return NEUTRAL_SCORE
        rssi_change = df["rssi"].diff().abs().iloc[1:].to_numpy()
        interval_s = df["timestamp"].diff().iloc[1:].to_numpy() / 1000.0
        # 同一时刻的样本按 1 毫秒间隔计算，突变仍会被计入
        rate = rssi_change / np.maximum(interval_s, MIN_INTERVAL_SECONDS)
        return float(np.mean(1.0 / (1.0 + rate)))

    def interference_level(self, df: pd.DataFrame) -> float:
        if len(df) < MIN_SAMPLES_INTERFERENCE:
            return NEUTRAL_SCORE
        jumps = int((df["rssi"].diff().abs().iloc[1:] > self.interference_threshold_dbm).sum())
        return float(np.clip(1.0 - jumps / (len(df) - 1), 0.0, 1.0))

    # ---- Single sample ----
    def reliability(self, signal: float, distance: float, consistency: float) -> ReliabilityScore:
        """单样本可靠性评分 (0~100)：信号 0.4 + 距离 0.3 + 一致性 0.3"""
        signal_score = self.signal_strength_score(signal)
        proximity_score = self.proximity_score(distance)
        consistency = float(np.clip(consistency, 0.0, 1.0))
        overall = (signal_score * 0.4 + proximity_score * 0.3 + consistency * 0.3) * 100

        return ReliabilityScore(
            overall=int(np.clip(round(overall), 0, 100)),
            signal_strength=int(round(signal_score * 100)),
            proximity=int(round(proximity_score * 100)),
            consistency=int(round(consistency * 100)),
            risk_factors=tuple(self._risk_factors(signal_score, proximity_score, consistency)),
        )

    @staticmethod
    def signal_strength_score(rssi: float) -> float:
        for threshold, score in SIGNAL_STRENGTH_BANDS:
            if rssi > threshold:
                return score
        return LOWEST_BAND_SCORE

    @staticmethod
    def proximity_score(distance: float) -> float:
        for threshold, score in PROXIMITY_BANDS:
            if distance < threshold:
                return score
        return LOWEST_BAND_SCORE

    @staticmethod
    def _risk_factors(signal_score: float, proximity_score: float, consistency: float) -> List[str]:
        risks: List[str] = []
        if signal_score <= 0.4:
            risks.append("weak_signal")
        if proximity_score <= 0.4:
            risks.append("far_proximity")
        if consistency < 0.5:
            risks.append("low_consistency")
        return risks

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "assessments": self.assessments,
            "insufficient_assessments": self.insufficient_assessments,
            "window_ms": self.window_ms,
            "interference_threshold_dbm": self.interference_threshold_dbm,
        }
