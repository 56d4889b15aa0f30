import math

import pytest

from ble_signal_analytics.calculator import DistanceEstimator, ReferencePowerCalibration
from ble_signal_analytics.models import (
    INVALID_DISTANCE,
    DistanceModel,
    EnvironmentalFactors,
    EstimatorState,
    FilteredSignal,
)


def _filtered(value: float, confidence: float, is_outlier: bool = False, improvement: float = 0.0) -> FilteredSignal:
    return FilteredSignal(
        value=value,
        confidence=confidence,
        is_outlier=is_outlier,
        improvement=improvement,
        state=EstimatorState(value, 0.6, 0.13, 0.1, 4.0, 10),
    )


def test_path_loss_uses_default_transmit_power() -> None:
    estimator = DistanceEstimator()

    at_one_meter = estimator.estimate(-59)
    far = estimator.estimate(-81)

    assert at_one_meter.distance == pytest.approx(1.0)
    assert at_one_meter.model is DistanceModel.ENHANCED_PATH_LOSS
    assert at_one_meter.calibration_applied is False
    assert far.distance == pytest.approx(10.0)
    assert far.confidence < at_one_meter.confidence


def test_path_loss_prefers_beacon_transmit_power() -> None:
    estimator = DistanceEstimator()

    result = estimator.estimate(-65, tx_power=-65)

    assert result.distance == pytest.approx(1.0)
    assert result.tx_power_used == -65


@pytest.mark.parametrize("signal", [-200, -1000, 50, 20, -100])
def test_all_models_clamp_to_reliable_range(signal: int) -> None:
    estimator = DistanceEstimator()

    multi = estimator.estimate_multi_model(signal)

    for estimate in multi.all_estimates:
        assert 0.1 <= estimate.distance <= 50.0


def test_zero_signal_returns_invalid_sentinel() -> None:
    estimator = DistanceEstimator()

    result = estimator.estimate(0)
    multi = estimator.estimate_multi_model(0)

    assert result.distance == INVALID_DISTANCE
    assert result.is_valid is False
    assert all(e.distance == INVALID_DISTANCE for e in multi.all_estimates)
    assert multi.model_agreement == 0.0


@pytest.mark.parametrize(
    "signal,expected",
    [(-45, 0.5), (-55, 1.0), (-65, 2.5), (-75, 5.0), (-85, 10.0), (-95, 20.0)],
)
def test_empirical_model_bands(signal: int, expected: float) -> None:
    estimator = DistanceEstimator()

    result = estimator.estimate_empirical(signal)

    assert result.distance == expected
    assert result.model is DistanceModel.EMPIRICAL
    assert result.calibration_applied is False


@pytest.mark.parametrize("signal", [-40, -59, -67, -80, -95, -120, 30])
def test_multi_model_picks_highest_confidence(signal: int) -> None:
    estimator = DistanceEstimator()

    multi = estimator.estimate_multi_model(signal)

    assert len(multi.all_estimates) == 3
    assert multi.best_estimate.confidence == max(e.confidence for e in multi.all_estimates)
    assert multi.recommended_model is multi.best_estimate.model


def test_models_agree_at_one_meter() -> None:
    estimator = DistanceEstimator()

    multi = estimator.estimate_multi_model(-59)

    assert multi.model_agreement == pytest.approx(1.0)


def test_model_agreement_drops_when_models_diverge() -> None:
    estimator = DistanceEstimator()

    near = estimator.estimate_multi_model(-59).model_agreement
    far = estimator.estimate_multi_model(-98).model_agreement

    assert 0.0 <= far < near


def test_unreliable_filtered_signal_falls_back_with_halved_confidence() -> None:
    estimator = DistanceEstimator()
    baseline = estimator.estimate(-65)

    result = estimator.estimate_filtered(_filtered(-65.2, confidence=0.5))

    assert result.distance == pytest.approx(baseline.distance)
    assert result.confidence == pytest.approx(baseline.confidence * 0.5)
    assert result.model is DistanceModel.ENHANCED_PATH_LOSS


def test_outlier_filtered_signal_falls_back() -> None:
    estimator = DistanceEstimator()
    baseline = estimator.estimate(-65)

    result = estimator.estimate_filtered(_filtered(-65.0, confidence=0.95, is_outlier=True))

    assert result.confidence == pytest.approx(baseline.confidence * 0.5)


def test_reliable_filtered_signal_blends_confidence() -> None:
    estimator = DistanceEstimator()

    result = estimator.estimate_filtered(_filtered(-65.0, confidence=0.9, improvement=0.5))

    assert result.model is DistanceModel.FILTER_ENHANCED
    assert result.confidence == pytest.approx((0.8 + 0.9) / 2 + 0.05)


def test_calibration_learns_reference_power() -> None:
    calibration = ReferencePowerCalibration(path_loss_exponent=2.2)
    estimator = DistanceEstimator(calibration=calibration)

    estimator.calibrate(-65, 3.0)
    calibrated = estimator.estimate(-65)
    advertised = estimator.estimate(-65, tx_power=-59)

    assert calibration.reference_power == pytest.approx(-65 + 22 * math.log10(3.0))
    assert calibrated.distance == pytest.approx(3.0)
    assert calibrated.calibration_applied is True
    assert advertised.tx_power_used == -59
    assert advertised.calibration_applied is False
    assert estimator.estimate_log_distance(-65).calibration_applied is False


def test_calibration_ignores_unusable_distances() -> None:
    calibration = ReferencePowerCalibration()

    assert calibration.add_point(-65, 0.0) is None
    assert calibration.add_point(-65, 80.0) is None
    assert calibration.add_point(0, 3.0) is None
    assert len(calibration) == 0
    assert calibration.reference_power is None


def test_outdoor_environment_uses_outdoor_exponent() -> None:
    estimator = DistanceEstimator()

    result = estimator.estimate(-79, env=EnvironmentalFactors(indoor=False))

    assert result.distance == pytest.approx(10.0)


def test_environmental_compensation_adjusts_signal_and_confidence() -> None:
    estimator = DistanceEstimator()

    warm = estimator.estimate(-65, env=EnvironmentalFactors(temperature=30.0))
    noisy = estimator.estimate(-65, env=EnvironmentalFactors(interference=1.0))
    clean = estimator.estimate(-65)

    assert warm.rssi_used == pytest.approx(-64.8)
    assert noisy.confidence == pytest.approx(clean.confidence * 0.5)


def test_statistics_count_model_usage() -> None:
    estimator = DistanceEstimator()
    estimator.estimate_multi_model(-65)
    estimator.estimate_filtered(_filtered(-65.0, confidence=0.9))

    stats = estimator.get_statistics()

    assert stats["model_counts"]["enhanced_path_loss"] == 2
    assert stats["model_counts"]["filter_enhanced"] == 1
    assert stats["calibration_points"] == 0
