#!/usr/bin/env python3
"""
SOC CALCULATION MODULE
====================

SOC estimation for a 12V LiFePO4 battery from terminal voltage and
instantaneous current:
1. Operating state classification (resting / charging / discharging)
2. Per-state voltage-SOC curve selection
3. Coulomb counting since the previous sample
4. Weighted fusion of coulomb and voltage estimates

Author: Research Team
Version: 2.0 - Home automation SOC engine
"""

import math
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from soc_curves import (
    Curve,
    LIFEPO4_CHARGING_CURVE,
    LIFEPO4_DISCHARGING_CURVE,
    LIFEPO4_RESTING_CURVE,
    LIFEPO4_STANDARD_CURVE,
    clamp_soc,
    round_half_up,
    validate_curve,
    voltage_to_soc,
)

logger = logging.getLogger(__name__)

DEFAULT_CURRENT_THRESHOLD = 0.1  # A, dead-band around zero current
MS_PER_HOUR = 3600 * 1000


class OperatingState(Enum):
    """Battery operating state derived from signed current"""
    RESTING = "resting"
    CHARGING = "charging"
    DISCHARGING = "discharging"


@dataclass(frozen=True)
class BlendWeights:
    """Weights for fusing coulomb and voltage SOC estimates"""
    coulomb: float
    voltage: float

    def __post_init__(self):
        if self.coulomb < 0 or self.voltage < 0:
            raise ValueError(f"Blend weights must be non-negative: {self}")
        if not math.isclose(self.coulomb + self.voltage, 1.0, abs_tol=1e-6):
            raise ValueError(f"Blend weights must sum to 1.0: {self}")


DEFAULT_CHARGING_WEIGHTS = BlendWeights(coulomb=0.7, voltage=0.3)
DEFAULT_DISCHARGING_WEIGHTS = BlendWeights(coulomb=0.6, voltage=0.4)


@dataclass(frozen=True)
class BatteryConfig:
    """Immutable battery and estimator configuration"""
    capacity_ah: float = 100.0
    current_threshold: float = DEFAULT_CURRENT_THRESHOLD
    resting_curve: Curve = LIFEPO4_RESTING_CURVE
    charging_curve: Curve = LIFEPO4_CHARGING_CURVE
    discharging_curve: Curve = LIFEPO4_DISCHARGING_CURVE
    standard_curve: Curve = LIFEPO4_STANDARD_CURVE
    charging_weights: BlendWeights = DEFAULT_CHARGING_WEIGHTS
    discharging_weights: BlendWeights = DEFAULT_DISCHARGING_WEIGHTS
    # Treat curve saturation (voltage outside the knots) as "no voltage estimate"
    exclude_saturated_voltage: bool = False

    def __post_init__(self):
        if self.capacity_ah <= 0:
            raise ValueError(f"capacity_ah must be positive, got {self.capacity_ah}")
        if self.current_threshold < 0:
            raise ValueError(f"current_threshold must be >= 0, got {self.current_threshold}")
        for name in ("resting_curve", "charging_curve", "discharging_curve", "standard_curve"):
            object.__setattr__(self, name, validate_curve(getattr(self, name), name=name))


@dataclass
class SOCEstimate:
    """Result of one SOC estimation"""
    soc: int
    state: OperatingState
    voltage: float                      # Measured voltage (V)
    adjusted_voltage: float             # Voltage used for curve lookup (V)
    current: Optional[float] = None     # A, positive = charging
    soc_coulomb: Optional[float] = None
    soc_voltage: Optional[int] = None
    timestamp_ms: Optional[float] = None


def classify_state(current: float, threshold: float = DEFAULT_CURRENT_THRESHOLD) -> OperatingState:
    """Classify current into an operating state using a symmetric dead-band"""
    if current > threshold:
        return OperatingState.CHARGING
    if current < -threshold:
        return OperatingState.DISCHARGING
    return OperatingState.RESTING


def select_curve(state: OperatingState, config: BatteryConfig) -> Curve:
    """Curve matching the operating state; resting curve for anything else"""
    curves: Dict[OperatingState, Curve] = {
        OperatingState.CHARGING: config.charging_curve,
        OperatingState.DISCHARGING: config.discharging_curve,
        OperatingState.RESTING: config.resting_curve,
    }
    return curves.get(state, config.resting_curve)


def current_from_power(power_w: float, voltage_v: float) -> float:
    """I = P / U; power is signed, positive while charging"""
    if voltage_v == 0:
        raise ValueError("Cannot derive current at 0V")
    return power_w / voltage_v


def elapsed_hours(now_ms: float, last_update_ms: Optional[float]) -> float:
    """
    Hours since the last update

    Returns 0 on first run (no previous timestamp) and when the clock moved
    backwards, so neither produces a spurious coulomb delta.
    """
    if last_update_ms is None:
        return 0.0
    delta_ms = now_ms - last_update_ms
    if delta_ms < 0:
        logger.warning(f"Last SOC update {last_update_ms:.0f} lies after now {now_ms:.0f}, "
                       f"ignoring elapsed time")
        return 0.0
    return delta_ms / MS_PER_HOUR


def coulomb_count(previous_soc: float, current_a: float, hours: float,
                  capacity_ah: float, threshold: float = DEFAULT_CURRENT_THRESHOLD) -> float:
    """
    Integrate current over the elapsed time into an SOC delta

    Args:
        previous_soc: SOC before this interval (%)
        current_a: Battery current in A (positive = charging)
        hours: Interval length in hours
        capacity_ah: Battery capacity in Ah
        threshold: Currents below this magnitude count as noise

    Returns:
        New SOC clamped to [0, 100]; previous_soc unchanged for noise currents
    """
    if abs(current_a) < threshold:
        return previous_soc

    delta_ah = current_a * hours
    delta_soc = (delta_ah / capacity_ah) * 100
    return clamp_soc(previous_soc + delta_soc)


def blend_soc(soc_coulomb: float, soc_voltage: Optional[float], weights: BlendWeights) -> int:
    """Weighted fusion; coulomb estimate alone when no voltage estimate is usable"""
    if soc_voltage is None:
        blended = soc_coulomb
    else:
        blended = weights.coulomb * soc_coulomb + weights.voltage * soc_voltage
    return int(clamp_soc(round_half_up(blended)))


class SOCEstimator:
    """
    SOC estimator combining voltage curves with coulomb counting

    Stateless between calls: the previous SOC and elapsed time are supplied
    by the caller, who owns persistence.
    """

    def __init__(self, config: Optional[BatteryConfig] = None):
        self.config = config or BatteryConfig()
        logger.debug(f"SOC Estimator initialized: Capacity={self.config.capacity_ah}Ah, "
                     f"Threshold={self.config.current_threshold}A")

    def classify(self, current_a: float) -> OperatingState:
        return classify_state(current_a, self.config.current_threshold)

    def estimate_from_voltage(self, voltage: float, voltage_offset: float = 0.0,
                              timestamp_ms: Optional[float] = None) -> SOCEstimate:
        """Voltage-only estimate on the standard curve"""
        adjusted = voltage - voltage_offset
        soc = voltage_to_soc(adjusted, self.config.standard_curve)
        logger.debug(f"Voltage SOC: {voltage:.2f}V (adjusted {adjusted:.2f}V) -> {soc}%")
        return SOCEstimate(
            soc=soc,
            state=OperatingState.RESTING,
            voltage=voltage,
            adjusted_voltage=adjusted,
            soc_voltage=soc,
            timestamp_ms=timestamp_ms,
        )

    def estimate(self, voltage: float, current_a: float, previous_soc: float, hours: float,
                 voltage_offset: Optional[float] = None,
                 timestamp_ms: Optional[float] = None) -> SOCEstimate:
        """
        Blended estimate for one sample

        Args:
            voltage: Measured terminal voltage (V)
            current_a: Battery current (A, positive = charging)
            previous_soc: Last persisted SOC (%)
            hours: Time since the previous SOC in hours
            voltage_offset: Calibration offset computed against the standard
                curve. When given, the voltage estimate is read from the
                shifted standard curve instead of the per-state curve
            timestamp_ms: Sample time, carried into the result

        Returns:
            SOCEstimate with the fused SOC in [0, 100]
        """
        config = self.config
        state = self.classify(current_a)
        if voltage_offset is None:
            curve = select_curve(state, config)
            adjusted = voltage
        else:
            # The offset only aligns the curve it was derived from
            curve = config.standard_curve
            adjusted = voltage - voltage_offset

        if state is OperatingState.RESTING:
            # Voltage is the reliable indicator at (near) zero current
            soc_voltage = voltage_to_soc(adjusted, curve)
            logger.debug(f"SOC {state.value}: {voltage:.2f}V -> {soc_voltage}%")
            return SOCEstimate(
                soc=soc_voltage,
                state=state,
                voltage=voltage,
                adjusted_voltage=adjusted,
                current=current_a,
                soc_voltage=soc_voltage,
                timestamp_ms=timestamp_ms,
            )

        soc_coulomb = coulomb_count(previous_soc, current_a, hours,
                                    config.capacity_ah, config.current_threshold)
        soc_voltage = voltage_to_soc(adjusted, curve, saturate=not config.exclude_saturated_voltage)

        if state is OperatingState.CHARGING:
            weights = config.charging_weights
        else:
            weights = config.discharging_weights
        soc = blend_soc(soc_coulomb, soc_voltage, weights)

        logger.debug(f"SOC {state.value} ({current_a:+.2f}A): {voltage:.2f}V -> {soc}% "
                     f"(Coulomb: {soc_coulomb:.1f}%, Voltage: {soc_voltage}%)")

        return SOCEstimate(
            soc=soc,
            state=state,
            voltage=voltage,
            adjusted_voltage=adjusted,
            current=current_a,
            soc_coulomb=soc_coulomb,
            soc_voltage=soc_voltage,
            timestamp_ms=timestamp_ms,
        )
