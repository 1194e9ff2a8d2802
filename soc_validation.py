#!/usr/bin/env python3
"""
SOC VALIDATION
==============

Offline checks of the SOC engine against reference SOC values (e.g. exported
from the battery vendor app):
- SOCValidator: accuracy statistics over (reference, estimate) pairs
- replay_samples: runs logged voltage/power samples through the estimator
  exactly as the live orchestrator would

Author: Research Team
Version: 1.0
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from soc_calculation import BatteryConfig, SOCEstimator, current_from_power, elapsed_hours
from soc_calibration import CalibrationReference, calculate_voltage_offset
from soc_curves import clamp_soc

logger = logging.getLogger(__name__)

REPLAY_COLUMNS = ["timestamp_ms", "voltage", "power", "state", "current",
                  "soc_coulomb", "soc_voltage", "soc"]


class SOCValidator:
    """SOC estimation validator for testing accuracy"""

    def __init__(self):
        self.errors: List[float] = []

    def add_comparison(self, reference_soc: float, estimated_soc: float) -> Dict:
        """Add SOC comparison point"""
        error = abs(reference_soc - estimated_soc)
        self.errors.append(error)

        return {
            'reference': reference_soc,
            'estimated': estimated_soc,
            'error': error,
            'error_percentage': (error / reference_soc) * 100 if reference_soc > 0 else 0
        }

    def get_accuracy_stats(self) -> Dict:
        """Get accuracy statistics"""
        if not self.errors:
            return {}

        return {
            'mean_error': float(np.mean(self.errors)),
            'std_error': float(np.std(self.errors)),
            'max_error': float(np.max(self.errors)),
            'min_error': float(np.min(self.errors)),
            'rmse': float(np.sqrt(np.mean(np.square(self.errors)))),
            'accuracy_5pct': sum(1 for e in self.errors if e <= 5.0) / len(self.errors) * 100
        }


def _value(row: Dict, column: str) -> Optional[float]:
    value = row.get(column)
    if value is None or pd.isna(value):
        return None
    return float(value)


def replay_samples(samples: pd.DataFrame, config: Optional[BatteryConfig] = None,
                   calibration: Optional[CalibrationReference] = None,
                   initial_soc: float = 50.0,
                   validator: Optional[SOCValidator] = None) -> pd.DataFrame:
    """
    Replay logged samples through the SOC estimator

    Args:
        samples: Columns timestamp_ms, voltage, optional power and reference_soc
        config: Battery configuration (defaults if None)
        calibration: Fixed reference point applied to every sample
        initial_soc: SOC assumed before the first sample
        validator: Receives (reference_soc, soc) pairs where references exist

    Returns:
        One row per accepted sample; samples lacking voltage (or power, when
        the power column exists) are skipped like the live update cycle does
    """
    estimator = SOCEstimator(config)
    blended = "power" in samples.columns
    has_reference = "reference_soc" in samples.columns

    offset = 0.0
    calibrated = False
    if calibration is not None:
        result = calculate_voltage_offset(calibration, estimator.config.standard_curve)
        offset, calibrated = result.offset, result.valid

    soc = clamp_soc(initial_soc)
    last_ms: Optional[float] = None
    rows = []
    skipped = 0

    for row in samples.sort_values("timestamp_ms").to_dict("records"):
        now_ms = _value(row, "timestamp_ms")
        voltage = _value(row, "voltage")
        power = _value(row, "power") if blended else None
        if now_ms is None or voltage is None or (blended and (power is None or voltage <= 0)):
            skipped += 1
            continue

        if blended:
            current = current_from_power(power, voltage)
            hours = elapsed_hours(now_ms, last_ms)
            estimate = estimator.estimate(voltage, current, soc, hours,
                                          voltage_offset=offset if calibrated else None,
                                          timestamp_ms=now_ms)
        else:
            estimate = estimator.estimate_from_voltage(voltage, voltage_offset=offset,
                                                       timestamp_ms=now_ms)

        soc = estimate.soc
        last_ms = now_ms
        result = {
            "timestamp_ms": now_ms,
            "voltage": voltage,
            "power": power,
            "state": estimate.state.value,
            "current": estimate.current,
            "soc_coulomb": estimate.soc_coulomb,
            "soc_voltage": estimate.soc_voltage,
            "soc": estimate.soc,
        }

        if has_reference:
            reference = _value(row, "reference_soc")
            result["reference_soc"] = reference
            result["error"] = None if reference is None else estimate.soc - reference
            if reference is not None and validator is not None:
                validator.add_comparison(reference, estimate.soc)

        rows.append(result)

    if skipped:
        logger.info(f"Replay skipped {skipped} samples with missing inputs")

    columns = REPLAY_COLUMNS + (["reference_soc", "error"] if has_reference else [])
    return pd.DataFrame(rows, columns=columns)
