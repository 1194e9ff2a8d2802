#!/usr/bin/env python3
"""
SOC Estimator Configuration
===========================
Deployment settings loaded from JSON (soc_config.json by default): operating
mode, battery parameters, curve overrides, state keys, scheduling, storage
backend and logging.
"""

import os
import json
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from soc_calculation import BatteryConfig, BlendWeights
from soc_curves import curve_from_pairs

logger = logging.getLogger(__name__)

MODE_VOLTAGE_ONLY = "voltage_only"
MODE_BLENDED = "blended"
MODES = (MODE_VOLTAGE_ONLY, MODE_BLENDED)

STORE_BACKENDS = ("memory", "sqlite", "mqtt")


@dataclass
class StateKeys:
    """
    State store keys read and written by the orchestrator

    With the MQTT backend a key is the topic path below topic_prefix, so
    levels are separated by "/" (ioBroker state 0_userdata.0.solar.soc is
    topic 0_userdata/0/solar/soc).
    """
    voltage: str = "solar.battery_voltage"
    power: str = "solar.battery_power"
    soc: str = "solar.battery_soc"
    last_update: str = "solar.battery_soc_last_update"
    soc_text: str = "solar.battery_soc_text"
    ref_soc: str = "solar.battery_ref_soc"
    ref_voltage: str = "solar.battery_ref_voltage"
    voltage_offset: str = "solar.battery_voltage_offset"


@dataclass
class SOCSystemConfig:
    """SOC estimator deployment configuration"""
    # Estimation
    mode: str = MODE_BLENDED
    calibration_enabled: bool = False
    text_status_enabled: Optional[bool] = None  # defaults to calibration_enabled
    error_text_on_failure: bool = True

    # Battery: Redodo 12V 100Ah LiFePO4
    capacity_ah: float = 100.0
    current_threshold: float = 0.1
    default_soc: float = 50.0
    exclude_saturated_voltage: bool = False
    charging_weights: List[float] = field(default_factory=lambda: [0.7, 0.3])
    discharging_weights: List[float] = field(default_factory=lambda: [0.6, 0.4])

    # Curve overrides as [[voltage, soc], ...], None keeps the built-in curve
    resting_curve: Optional[List[List[float]]] = None
    charging_curve: Optional[List[List[float]]] = None
    discharging_curve: Optional[List[List[float]]] = None
    standard_curve: Optional[List[List[float]]] = None

    # Calibration reference defaults written on first start
    default_ref_soc: float = 99.0
    default_ref_voltage: float = 13.5

    # Scheduling
    update_interval_s: float = 60.0
    watch_inputs: bool = True

    # Storage
    store_backend: str = "memory"
    db_path: str = "soc_states.db"
    mqtt: Dict[str, Any] = field(default_factory=dict)
    keys: StateKeys = field(default_factory=StateKeys)

    # Logging
    log_file: str = "./logs/soc_estimator.log"
    log_level: str = "INFO"

    def __post_init__(self):
        if isinstance(self.keys, dict):
            self.keys = StateKeys(**self.keys)
        if self.text_status_enabled is None:
            self.text_status_enabled = self.calibration_enabled

        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        if self.store_backend not in STORE_BACKENDS:
            raise ValueError(f"store_backend must be one of {STORE_BACKENDS}, got {self.store_backend!r}")
        if self.update_interval_s <= 0:
            raise ValueError(f"update_interval_s must be positive, got {self.update_interval_s}")
        if not 0.0 <= self.default_soc <= 100.0:
            raise ValueError(f"default_soc must be within 0-100, got {self.default_soc}")

        # Fail fast on bad curves and weights
        self.to_battery_config()

    def to_battery_config(self) -> BatteryConfig:
        """Build the immutable estimator configuration"""
        overrides = {}
        for name in ("resting_curve", "charging_curve", "discharging_curve", "standard_curve"):
            pairs = getattr(self, name)
            if pairs is not None:
                overrides[name] = curve_from_pairs(pairs, name=name)

        return BatteryConfig(
            capacity_ah=self.capacity_ah,
            current_threshold=self.current_threshold,
            charging_weights=BlendWeights(*self.charging_weights),
            discharging_weights=BlendWeights(*self.discharging_weights),
            exclude_saturated_voltage=self.exclude_saturated_voltage,
            **overrides,
        )


def load_config(config_file: str = "soc_config.json") -> SOCSystemConfig:
    """
    Load configuration from JSON

    A missing file yields the defaults. Unknown keys are ignored with a
    warning; invalid values raise ValueError (CurveConfigurationError for curves).
    """
    if not os.path.exists(config_file):
        logger.warning(f"Config file {config_file} not found, using defaults")
        return SOCSystemConfig()

    with open(config_file, 'r') as f:
        config_data = json.load(f)

    known = {f.name for f in fields(SOCSystemConfig)}
    unknown = sorted(set(config_data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown config keys in {config_file}: {unknown}")

    config = SOCSystemConfig(**{k: v for k, v in config_data.items() if k in known})
    logger.info(f"Configuration loaded from {config_file}: mode={config.mode}, "
                f"calibration={config.calibration_enabled}, backend={config.store_backend}")
    return config
