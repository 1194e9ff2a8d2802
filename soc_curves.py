#!/usr/bin/env python3
"""
VOLTAGE-SOC CURVES
==================

Piecewise-linear open-circuit voltage curves for a 12V LiFePO4 (4S) battery
and the lookups used by the SOC estimator:
- voltage -> SOC (forward, rounded to whole percent)
- SOC -> voltage (inverse, unrounded, used by calibration)
- curve validation at configuration time

Curves are tuples of VoltageSOCPoint sorted by descending voltage.

Author: Research Team
Version: 1.0
"""

import math
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)


class CurveConfigurationError(ValueError):
    """Raised when a voltage-SOC curve cannot be used for interpolation"""


@dataclass(frozen=True)
class VoltageSOCPoint:
    """One knot of a voltage-SOC curve"""
    voltage: float  # Terminal voltage (V)
    soc: float      # State of charge (%)


Curve = Tuple[VoltageSOCPoint, ...]


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 always upwards"""
    return int(math.floor(value + 0.5))


def clamp_soc(value: float) -> float:
    """Clamp an SOC value to [0, 100]"""
    return float(np.clip(value, 0.0, 100.0))


def validate_curve(points: Iterable[Union[VoltageSOCPoint, Sequence[float]]], name: str = "curve") -> Curve:
    """
    Validate a voltage-SOC curve and return it as an immutable tuple

    Args:
        points: Knots as VoltageSOCPoint or (voltage, soc) pairs
        name: Curve name used in error messages

    Returns:
        Validated curve

    Raises:
        CurveConfigurationError: fewer than two knots, non-finite or out of range
            values, voltages not strictly descending, or SOC rising as voltage falls
    """
    curve = []
    for point in points:
        if not isinstance(point, VoltageSOCPoint):
            try:
                voltage, soc = point
                point = VoltageSOCPoint(float(voltage), float(soc))
            except (TypeError, ValueError) as e:
                raise CurveConfigurationError(f"{name}: invalid knot {point!r}: {e}") from e
        curve.append(point)

    if len(curve) < 2:
        raise CurveConfigurationError(f"{name}: at least two knots required, got {len(curve)}")

    for index, point in enumerate(curve):
        if not (math.isfinite(point.voltage) and math.isfinite(point.soc)):
            raise CurveConfigurationError(f"{name}: knot {index} is not finite: {point}")
        if not 0.0 <= point.soc <= 100.0:
            raise CurveConfigurationError(f"{name}: knot {index} SOC {point.soc} outside 0-100%")

    for index, (high, low) in enumerate(zip(curve, curve[1:])):
        if low.voltage >= high.voltage:
            raise CurveConfigurationError(
                f"{name}: voltages must be strictly descending "
                f"(knot {index}: {high.voltage}V, knot {index + 1}: {low.voltage}V)")
        if low.soc > high.soc:
            raise CurveConfigurationError(
                f"{name}: SOC rises from {high.soc}% to {low.soc}% "
                f"between {high.voltage}V and {low.voltage}V")

    return tuple(curve)


def curve_from_pairs(pairs: Iterable[Sequence[float]], name: str = "curve") -> Curve:
    """Build a validated curve from [[voltage, soc], ...] as found in JSON config"""
    return validate_curve(pairs, name=name)


def is_within_curve(voltage: float, curve: Curve) -> bool:
    """True if the voltage lies inside the knot range (bounds included)"""
    return curve[-1].voltage <= voltage <= curve[0].voltage


def voltage_to_soc(voltage: float, curve: Curve, saturate: bool = True) -> Optional[int]:
    """
    Interpolate SOC from voltage on a descending curve

    Above the top knot the result saturates at 100, below the bottom knot at 0.
    With saturate=False a voltage outside the knot range returns None instead.

    Args:
        voltage: Measured (or calibrated) voltage in V
        curve: Validated curve
        saturate: Saturate out-of-range voltages instead of returning None

    Returns:
        SOC rounded to whole percent and clamped to [0, 100]
    """
    if math.isnan(voltage):
        raise ValueError("voltage must be a number, got NaN")
    if len(curve) < 2:
        raise CurveConfigurationError(f"curve needs at least two knots, got {len(curve)}")

    if saturate:
        if voltage >= curve[0].voltage:
            return 100
        if voltage <= curve[-1].voltage:
            return 0
    elif not is_within_curve(voltage, curve):
        return None

    for high, low in zip(curve, curve[1:]):
        if low.voltage <= voltage <= high.voltage:
            span = high.voltage - low.voltage
            if span == 0:
                soc = low.soc
            else:
                soc = low.soc + (high.soc - low.soc) * (voltage - low.voltage) / span
            return int(clamp_soc(round_half_up(soc)))

    raise CurveConfigurationError(f"no curve segment brackets {voltage}V; curve is not descending")


def soc_to_voltage(soc: float, curve: Curve) -> float:
    """
    Inverse lookup: voltage at which the curve reaches the given SOC

    Not rounded, calibration needs sub-percent precision.
    """
    if math.isnan(soc):
        raise ValueError("soc must be a number, got NaN")
    if len(curve) < 2:
        raise CurveConfigurationError(f"curve needs at least two knots, got {len(curve)}")

    if soc >= curve[0].soc:
        return curve[0].voltage
    if soc <= curve[-1].soc:
        return curve[-1].voltage

    for high, low in zip(curve, curve[1:]):
        if low.soc <= soc <= high.soc:
            span = high.soc - low.soc
            if span == 0:
                return low.voltage
            return low.voltage + (high.voltage - low.voltage) * (soc - low.soc) / span

    raise CurveConfigurationError(f"no curve segment brackets {soc}%; curve is not monotonic")


# Resting (open-circuit) curve, no current flowing
LIFEPO4_RESTING_CURVE = validate_curve([
    (14.4, 100),
    (13.5, 99),
    (13.4, 90),
    (13.3, 70),
    (13.2, 50),
    (13.1, 30),
    (13.0, 20),
    (12.8, 10),
    (12.0, 0),
], name="resting_curve")

# Terminal voltage rises under charge current
LIFEPO4_CHARGING_CURVE = validate_curve([
    (14.6, 100),
    (14.4, 95),
    (14.2, 85),
    (14.0, 75),
    (13.8, 65),
    (13.6, 55),
    (13.4, 45),
    (13.2, 35),
    (13.0, 25),
    (12.8, 15),
    (12.5, 5),
    (12.0, 0),
], name="charging_curve")

# Terminal voltage sags under load
LIFEPO4_DISCHARGING_CURVE = validate_curve([
    (13.6, 100),
    (13.4, 65),
    (13.2, 40),
    (12.8, 20),
    (12.5, 10),
    (12.0, 0),
], name="discharging_curve")

# Generic curve shape; absolute position is shifted by the calibration offset
LIFEPO4_STANDARD_CURVE = validate_curve([
    (14.6, 100),
    (14.2, 95),
    (14.0, 90),
    (13.8, 80),
    (13.6, 70),
    (13.4, 60),
    (13.2, 50),
    (13.0, 40),
    (12.8, 30),
    (12.6, 20),
    (12.4, 10),
    (12.0, 0),
], name="standard_curve")
