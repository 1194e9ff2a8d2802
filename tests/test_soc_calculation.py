import itertools

import pytest

from soc_calculation import (
    BatteryConfig,
    BlendWeights,
    OperatingState,
    SOCEstimator,
    blend_soc,
    classify_state,
    coulomb_count,
    current_from_power,
    elapsed_hours,
    select_curve,
)
from soc_curves import CurveConfigurationError


@pytest.mark.parametrize("current,expected", [
    (0.05, OperatingState.RESTING),
    (0.0, OperatingState.RESTING),
    (0.1, OperatingState.RESTING),
    (-0.1, OperatingState.RESTING),
    (0.5, OperatingState.CHARGING),
    (-2.0, OperatingState.DISCHARGING),
])
def test_classify_state(current, expected):
    assert classify_state(current) is expected


def test_classify_state_custom_threshold():
    assert classify_state(0.5, threshold=1.0) is OperatingState.RESTING
    assert classify_state(-1.5, threshold=1.0) is OperatingState.DISCHARGING


def test_select_curve():
    config = BatteryConfig()
    assert select_curve(OperatingState.CHARGING, config) is config.charging_curve
    assert select_curve(OperatingState.DISCHARGING, config) is config.discharging_curve
    assert select_curve(OperatingState.RESTING, config) is config.resting_curve
    assert select_curve(None, config) is config.resting_curve


def test_coulomb_count_charges():
    assert coulomb_count(50, 10, 1, 100) == pytest.approx(60)


def test_coulomb_count_discharges():
    assert coulomb_count(50, -5, 2, 100) == pytest.approx(40)


@pytest.mark.parametrize("current", [0.0, 0.09, -0.09, 0.0999])
def test_coulomb_count_ignores_noise(current):
    assert coulomb_count(42.5, current, 10, 100) == 42.5


def test_coulomb_count_clamps():
    assert coulomb_count(95, 50, 1, 100) == 100
    assert coulomb_count(5, -50, 1, 100) == 0


def test_coulomb_count_stays_in_range():
    currents = [-500, -30, -1, -0.2, 0, 0.2, 1, 30, 500]
    hours = [0, 0.01, 0.5, 1, 24, 1000]
    for previous, current, h in itertools.product([0, 50, 100], currents, hours):
        assert 0 <= coulomb_count(previous, current, h, 100) <= 100


def test_elapsed_hours():
    assert elapsed_hours(7_200_000, 3_600_000) == pytest.approx(1.0)
    assert elapsed_hours(5_000, None) == 0.0


def test_elapsed_hours_ignores_clock_going_backwards(caplog):
    assert elapsed_hours(1_000, 5_000) == 0.0
    assert "ignoring elapsed time" in caplog.text


def test_current_from_power():
    assert current_from_power(26.8, 13.4) == pytest.approx(2.0)
    assert current_from_power(-134.0, 13.4) == pytest.approx(-10.0)
    with pytest.raises(ValueError):
        current_from_power(10.0, 0)


def test_blend_soc_weights():
    assert blend_soc(60, 80, BlendWeights(0.7, 0.3)) == 66
    assert blend_soc(40, 20, BlendWeights(0.6, 0.4)) == 32


def test_blend_soc_falls_back_to_coulomb():
    assert blend_soc(60.4, None, BlendWeights(0.7, 0.3)) == 60


def test_blend_soc_stays_in_range():
    weights = BlendWeights(0.6, 0.4)
    for coulomb, voltage in itertools.product([0, 0.4, 50, 99.6, 100], [None, 0, 100]):
        assert 0 <= blend_soc(coulomb, voltage, weights) <= 100


@pytest.mark.parametrize("coulomb,voltage", [(0.5, 0.4), (-0.1, 1.1), (0.0, 0.0)])
def test_blend_weights_validation(coulomb, voltage):
    with pytest.raises(ValueError):
        BlendWeights(coulomb, voltage)


def test_battery_config_validates():
    with pytest.raises(ValueError):
        BatteryConfig(capacity_ah=0)
    with pytest.raises(ValueError):
        BatteryConfig(current_threshold=-0.1)
    with pytest.raises(CurveConfigurationError):
        BatteryConfig(resting_curve=((12.0, 0), (13.0, 100)))


def test_battery_config_converts_pairs():
    config = BatteryConfig(resting_curve=[(14.0, 100), (12.0, 0)])
    assert config.resting_curve[0].voltage == 14.0
    assert isinstance(config.resting_curve, tuple)


def test_estimate_resting_uses_curve_only():
    estimate = SOCEstimator().estimate(13.2, 0.05, previous_soc=80, hours=1)
    assert estimate.state is OperatingState.RESTING
    assert estimate.soc == 50
    assert estimate.soc_coulomb is None


def test_estimate_charging_blends():
    estimate = SOCEstimator().estimate(13.9, 10.0, previous_soc=40, hours=1)
    assert estimate.state is OperatingState.CHARGING
    assert estimate.soc_coulomb == pytest.approx(50)
    assert estimate.soc_voltage == 70
    assert estimate.soc == 56


def test_estimate_discharging_blends():
    estimate = SOCEstimator().estimate(12.8, -10.0, previous_soc=50, hours=1)
    assert estimate.state is OperatingState.DISCHARGING
    assert estimate.soc_coulomb == pytest.approx(40)
    assert estimate.soc_voltage == 20
    assert estimate.soc == 32


def test_estimate_saturated_voltage_blended_by_default():
    estimate = SOCEstimator().estimate(15.0, 10.0, previous_soc=50, hours=1)
    assert estimate.soc_voltage == 100
    assert estimate.soc == 72


def test_estimate_saturated_voltage_excluded_when_configured():
    estimator = SOCEstimator(BatteryConfig(exclude_saturated_voltage=True))
    estimate = estimator.estimate(15.0, 10.0, previous_soc=50, hours=1)
    assert estimate.soc_voltage is None
    assert estimate.soc == 60


def test_estimate_with_offset_reads_standard_curve():
    estimator = SOCEstimator()
    uncalibrated = estimator.estimate(13.1, 10.0, previous_soc=40, hours=1)
    calibrated = estimator.estimate(13.1, 10.0, previous_soc=40, hours=1, voltage_offset=-0.5)

    # charging curve at 13.1V gives 30, shifted standard curve at 13.6V gives 70
    assert uncalibrated.soc_voltage == 30
    assert uncalibrated.soc == 44
    assert calibrated.adjusted_voltage == pytest.approx(13.6)
    assert calibrated.soc_voltage == 70
    assert calibrated.soc == 56


def test_calibrated_resting_estimate_matches_voltage_only():
    estimator = SOCEstimator()
    blended = estimator.estimate(13.2, 0.0, previous_soc=50, hours=0, voltage_offset=-1.02)
    voltage_only = estimator.estimate_from_voltage(13.2, voltage_offset=-1.02)

    assert blended.state is OperatingState.RESTING
    assert blended.soc == voltage_only.soc == 95


def test_estimate_from_voltage_uses_standard_curve():
    estimator = SOCEstimator()
    assert estimator.estimate_from_voltage(13.2).soc == 50
    estimate = estimator.estimate_from_voltage(13.2, voltage_offset=-1.0, timestamp_ms=123)
    assert estimate.soc == 95
    assert estimate.timestamp_ms == 123
