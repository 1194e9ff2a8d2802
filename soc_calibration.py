#!/usr/bin/env python3
"""
SOC CALIBRATION
===============

Dynamic curve calibration from a user-supplied reference point.

The standard curve only defines the SHAPE of the discharge curve. Its absolute
position is shifted so that it passes through a trusted (SOC, voltage) pair,
e.g. read from the battery vendor's app:

    standard_voltage = soc_to_voltage(ref_soc, standard_curve)
    offset           = ref_voltage - standard_voltage
    adjusted_voltage = measured_voltage - offset

Example: 99% sits at ~14.52V on the standard curve. With the app reporting
99% at 13.5V the offset is ~-1.02V, so a later 13.0V reading is looked up as
~14.02V (~90%).

Author: Research Team
Version: 1.0
"""

import math
import logging
from dataclasses import dataclass
from typing import Optional

from soc_curves import Curve, soc_to_voltage, voltage_to_soc

logger = logging.getLogger(__name__)

SOC_TEXT_UNKNOWN = "Unknown"
SOC_TEXT_ERROR = "Error"

# (minimum SOC, label), checked top down
SOC_TEXT_THRESHOLDS = (
    (95, "Full"),
    (75, "High"),
    (40, "Medium"),
    (20, "Low"),
)
SOC_TEXT_EMPTY = "Empty"


@dataclass(frozen=True)
class CalibrationReference:
    """Trusted reference point: SOC reported at a measured voltage"""
    ref_soc: float
    ref_voltage: float

    def is_valid(self) -> bool:
        return (math.isfinite(self.ref_soc) and math.isfinite(self.ref_voltage)
                and 0.0 <= self.ref_soc <= 100.0 and self.ref_voltage > 0)


@dataclass(frozen=True)
class CalibrationResult:
    """Voltage offset derived from a reference"""
    offset: float
    valid: bool
    standard_voltage: Optional[float] = None


def calculate_voltage_offset(reference: CalibrationReference, curve: Curve) -> CalibrationResult:
    """
    Voltage shift that makes the standard curve pass through the reference

    An invalid reference yields offset 0.0 (uncalibrated curve) and a warning.
    """
    if not reference.is_valid():
        logger.warning(f"Invalid calibration reference: SOC={reference.ref_soc}%, "
                       f"Volt={reference.ref_voltage}V. Using offset 0.0V")
        return CalibrationResult(offset=0.0, valid=False)

    standard_voltage = soc_to_voltage(reference.ref_soc, curve)
    offset = reference.ref_voltage - standard_voltage

    logger.debug(f"Offset calculation: Ref SOC={reference.ref_soc}%, "
                 f"Ref Volt={reference.ref_voltage:.2f}V, Standard Volt={standard_voltage:.2f}V, "
                 f"Offset={offset:.3f}V")

    return CalibrationResult(offset=offset, valid=True, standard_voltage=standard_voltage)


def calibrated_voltage(measured_voltage: float, offset: float) -> float:
    return measured_voltage - offset


def calibrated_soc(measured_voltage: float, offset: float, curve: Curve) -> int:
    """SOC of a raw measurement on the offset-shifted standard curve"""
    return voltage_to_soc(calibrated_voltage(measured_voltage, offset), curve)


def soc_to_text(soc: float) -> str:
    """Five-bucket text status for dashboards"""
    for minimum, label in SOC_TEXT_THRESHOLDS:
        if soc >= minimum:
            return label
    return SOC_TEXT_EMPTY
