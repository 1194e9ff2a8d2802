import math

import pandas as pd
import pytest

from soc_calibration import CalibrationReference
from soc_validation import REPLAY_COLUMNS, SOCValidator, replay_samples

T0_MS = 1_700_000_000_000
HOUR_MS = 3_600_000


def test_validator_stats():
    validator = SOCValidator()
    point = validator.add_comparison(80, 76)
    validator.add_comparison(50, 52)
    validator.add_comparison(20, 20)

    assert point["error"] == 4
    assert point["error_percentage"] == pytest.approx(5.0)

    stats = validator.get_accuracy_stats()
    assert stats["mean_error"] == pytest.approx(2.0)
    assert stats["max_error"] == 4
    assert stats["min_error"] == 0
    assert stats["rmse"] == pytest.approx(math.sqrt(20 / 3))
    assert stats["accuracy_5pct"] == pytest.approx(100.0)


def test_validator_empty():
    assert SOCValidator().get_accuracy_stats() == {}


def test_replay_blended_samples():
    samples = pd.DataFrame({
        "timestamp_ms": [T0_MS + HOUR_MS, T0_MS, T0_MS + 2 * HOUR_MS],
        "voltage": [13.9, 13.9, float("nan")],
        "power": [139.0, 139.0, 10.0],
        "reference_soc": [70.0, 55.0, 80.0],
    })
    validator = SOCValidator()

    result = replay_samples(samples, validator=validator)

    assert list(result.columns) == REPLAY_COLUMNS + ["reference_soc", "error"]
    assert len(result) == 2
    # sorted by time: first sample has no elapsed time, second integrates one hour
    assert list(result["soc"]) == [56, 67]
    assert list(result["state"]) == ["charging", "charging"]
    assert list(result["error"]) == [1.0, -3.0]
    assert validator.get_accuracy_stats()["max_error"] == 3.0


def test_replay_voltage_only_samples():
    samples = pd.DataFrame({
        "timestamp_ms": [T0_MS, T0_MS + 60_000],
        "voltage": [13.2, 12.2],
    })

    result = replay_samples(samples)

    assert list(result.columns) == REPLAY_COLUMNS
    assert list(result["soc"]) == [50, 5]
    assert result["power"].isna().all()


def test_replay_with_calibration():
    samples = pd.DataFrame({"timestamp_ms": [T0_MS], "voltage": [13.0]})

    result = replay_samples(samples, calibration=CalibrationReference(99, 13.5))

    assert result["soc"].iloc[0] in (90, 91)


def test_replay_empty():
    result = replay_samples(pd.DataFrame({"timestamp_ms": [], "voltage": []}))
    assert result.empty
    assert list(result.columns) == REPLAY_COLUMNS
