import pytest

from soc_calibration import (
    CalibrationReference,
    calculate_voltage_offset,
    calibrated_soc,
    calibrated_voltage,
    soc_to_text,
)
from soc_curves import LIFEPO4_STANDARD_CURVE, soc_to_voltage, voltage_to_soc


def test_offset_from_app_reference():
    result = calculate_voltage_offset(CalibrationReference(99, 13.5), LIFEPO4_STANDARD_CURVE)
    assert result.valid
    assert result.standard_voltage == pytest.approx(14.52)
    assert result.offset == pytest.approx(-1.02)


def test_calibrated_measurement_on_standard_curve():
    offset = calculate_voltage_offset(CalibrationReference(99, 13.5), LIFEPO4_STANDARD_CURVE).offset
    assert calibrated_voltage(13.0, offset) == pytest.approx(14.02)
    assert 90 <= calibrated_soc(13.0, offset, LIFEPO4_STANDARD_CURVE) <= 91
    assert calibrated_soc(13.5, offset, LIFEPO4_STANDARD_CURVE) == 99


@pytest.mark.parametrize("ref_soc", [5, 37.5, 50, 73, 99])
def test_reference_on_curve_gives_zero_offset(ref_soc):
    ref_voltage = soc_to_voltage(ref_soc, LIFEPO4_STANDARD_CURVE)
    result = calculate_voltage_offset(CalibrationReference(ref_soc, ref_voltage), LIFEPO4_STANDARD_CURVE)
    assert result.offset == 0.0
    for voltage in (12.3, 13.1, 13.75, 14.5):
        assert calibrated_soc(voltage, result.offset, LIFEPO4_STANDARD_CURVE) == \
            voltage_to_soc(voltage, LIFEPO4_STANDARD_CURVE)


@pytest.mark.parametrize("ref_soc,ref_voltage", [
    (-1, 13.5),
    (101, 13.5),
    (50, 0),
    (50, -13.2),
    (float("nan"), 13.5),
    (50, float("inf")),
])
def test_invalid_reference_disables_calibration(ref_soc, ref_voltage, caplog):
    result = calculate_voltage_offset(CalibrationReference(ref_soc, ref_voltage), LIFEPO4_STANDARD_CURVE)
    assert not result.valid
    assert result.offset == 0.0
    assert "Invalid calibration reference" in caplog.text


def test_reference_bounds_are_inclusive():
    assert CalibrationReference(0, 12.0).is_valid()
    assert CalibrationReference(100, 14.6).is_valid()


@pytest.mark.parametrize("soc,text", [
    (100, "Full"),
    (95, "Full"),
    (94, "High"),
    (75, "High"),
    (74, "Medium"),
    (40, "Medium"),
    (39, "Low"),
    (20, "Low"),
    (19, "Empty"),
    (0, "Empty"),
])
def test_soc_to_text(soc, text):
    assert soc_to_text(soc) == text
