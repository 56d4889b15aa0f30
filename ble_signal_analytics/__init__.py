"""BLE Signal Analytics package.

This package provides:
- SignalEstimator: Kalman filtering of raw RSSI samples
- DistanceSmoother: Weighted moving average over computed distances
- DistanceEstimator: Multi-model RSSI-to-distance conversion
- QualityScorer: Multi-factor signal quality and reliability scoring
- AnalyticsPipeline: Per-beacon orchestration with bounded history and result stream
- ConfigManager: YAML-based configuration management
- MQTTAnalyticsBridge: MQTT ingestion of gateway readings and result publishing
"""

from .config_manager import ConfigManager
from .calculator import DistanceEstimator, ReferencePowerCalibration
from .filters import DistanceSmoother, SignalEstimator
from .history import SampleHistory
from .quality import QualityScorer
from .broadcast import ResultBroadcaster, Subscription
from .pipeline import AnalyticsPipeline
from .mqtt_processor import MQTTAnalyticsBridge
from .models import (
    DistanceEstimate,
    DistanceModel,
    EnrichedResult,
    EnvironmentalFactors,
    FilteredSignal,
    QualityScore,
    RawSample,
    ReliabilityScore,
    SignalMeasurement,
    SmoothedDistance,
)

__all__ = [
    "ConfigManager",
    "DistanceEstimator",
    "ReferencePowerCalibration",
    "DistanceSmoother",
    "SignalEstimator",
    "SampleHistory",
    "QualityScorer",
    "ResultBroadcaster",
    "Subscription",
    "AnalyticsPipeline",
    "MQTTAnalyticsBridge",
    "DistanceEstimate",
    "DistanceModel",
    "EnrichedResult",
    "EnvironmentalFactors",
    "FilteredSignal",
    "QualityScore",
    "RawSample",
    "ReliabilityScore",
    "SignalMeasurement",
    "SmoothedDistance",
]
