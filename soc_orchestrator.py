#!/usr/bin/env python3
"""
SOC UPDATE ORCHESTRATOR
=======================

Runs one SOC update cycle per trigger:
IDLE -> READING_INPUTS -> COMPUTING -> PERSISTING -> IDLE

- Reads voltage (and power, previous SOC/timestamp, calibration reference)
  from the state store
- Skips the cycle silently when a required input is missing or not a number
- Estimates SOC (voltage-only or blended) with optional calibration offset
- Persists SOC, timestamp, offset and text status

Triggered by the UpdateScheduler on a fixed interval and on input changes.

Author: Research Team
Version: 1.0 - Headless SOC service
"""

import os
import sys
import math
import time
import signal
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from config.network_config import get_mqtt_config
from config.soc_config import MODE_BLENDED, SOCSystemConfig, load_config
from soc_calculation import SOCEstimate, SOCEstimator, current_from_power, elapsed_hours
from soc_calibration import (
    SOC_TEXT_ERROR,
    SOC_TEXT_UNKNOWN,
    CalibrationReference,
    calculate_voltage_offset,
    soc_to_text,
)
from soc_curves import clamp_soc
from soc_scheduler import UpdateScheduler
from state_store import (
    MemoryStateStore,
    MqttStateStore,
    SQLiteStateStore,
    StateMeta,
    StateStore,
    ensure_state,
)

logger = logging.getLogger(__name__)


class CycleState(Enum):
    """Update cycle phase"""
    IDLE = "idle"
    READING_INPUTS = "reading_inputs"
    COMPUTING = "computing"
    PERSISTING = "persisting"


@dataclass
class CycleInputs:
    """Validated inputs of one update cycle"""
    now_ms: float
    voltage: float
    power: Optional[float] = None
    previous_soc: float = 50.0
    last_update_ms: Optional[float] = None
    reference: Optional[CalibrationReference] = None


def epoch_ms() -> float:
    return time.time() * 1000


def parse_number(value: Any) -> Optional[float]:
    """Finite float from a state value, None if absent or not a number"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class SOCUpdateOrchestrator:
    """Reads inputs, estimates SOC and persists results on each trigger"""

    def __init__(self, store: StateStore, config: Optional[SOCSystemConfig] = None,
                 clock: Callable[[], float] = epoch_ms):
        """
        Args:
            store: State store holding inputs and outputs
            config: Deployment configuration (defaults if None)
            clock: Returns the current time in epoch milliseconds
        """
        self.store = store
        self.config = config or SOCSystemConfig()
        self.keys = self.config.keys
        self.battery_config = self.config.to_battery_config()
        self.estimator = SOCEstimator(self.battery_config)
        self.clock = clock

        self.cycle_state = CycleState.IDLE
        self.last_estimate: Optional[SOCEstimate] = None
        self.last_offset: Optional[float] = None
        # Last text status written, used to suppress repeated writes
        self.last_text_status: Optional[str] = None

        logger.info(f"SOC orchestrator initialized: mode={self.config.mode}, "
                    f"calibration={self.config.calibration_enabled}, "
                    f"capacity={self.battery_config.capacity_ah}Ah")

    @property
    def tracks_power(self) -> bool:
        return self.config.mode == MODE_BLENDED

    def provision_states(self):
        """Create output (and reference input) states if absent"""
        keys = self.keys

        ensure_state(self.store, keys.soc, self.config.default_soc, StateMeta(
            name="Battery SOC", unit="%", write=True, role="level.battery.soc"))
        ensure_state(self.store, keys.last_update, int(self.clock()), StateMeta(
            name="Last SOC update", unit="ms", write=True, role="date"))

        if self.config.text_status_enabled:
            ensure_state(self.store, keys.soc_text, SOC_TEXT_UNKNOWN, StateMeta(
                name="SOC text status", type="string", role="state"))

        if self.config.calibration_enabled:
            ensure_state(self.store, keys.ref_soc, self.config.default_ref_soc, StateMeta(
                name="Reference SOC from battery app", unit="%", write=True),
                level=logging.WARNING)
            ensure_state(self.store, keys.ref_voltage, self.config.default_ref_voltage, StateMeta(
                name="Voltage at reference SOC", unit="V", write=True),
                level=logging.WARNING)
            ensure_state(self.store, keys.voltage_offset, 0.0, StateMeta(
                name="Calibration voltage offset", unit="V"))

        if self.config.text_status_enabled:
            stored = self.store.read(keys.soc_text)
            self.last_text_status = stored if isinstance(stored, str) else SOC_TEXT_UNKNOWN

    def _set_cycle_state(self, state: CycleState):
        if state is not self.cycle_state:
            logger.debug(f"Cycle state: {self.cycle_state.value} -> {state.value}")
            self.cycle_state = state

    def _read_number(self, key: str) -> Optional[float]:
        raw = self.store.read(key)
        number = parse_number(raw)
        if number is None and raw is not None:
            logger.warning(f"State {key} is not a number: {raw!r}")
        return number

    def _read_inputs(self) -> Optional[CycleInputs]:
        keys = self.keys
        now_ms = self.clock()

        voltage = self._read_number(keys.voltage)
        if voltage is None:
            logger.debug(f"SOC update skipped: no voltage data at {keys.voltage}")
            return None

        inputs = CycleInputs(now_ms=now_ms, voltage=voltage)

        if self.tracks_power:
            inputs.power = self._read_number(keys.power)
            if inputs.power is None:
                logger.debug(f"SOC update skipped: no power data at {keys.power}")
                return None
            if voltage <= 0:
                logger.warning(f"SOC update skipped: cannot derive current at {voltage}V")
                return None

            previous_soc = self._read_number(keys.soc)
            if previous_soc is not None:
                inputs.previous_soc = clamp_soc(previous_soc)
            else:
                inputs.previous_soc = self.config.default_soc
            last_update = self._read_number(keys.last_update)
            inputs.last_update_ms = last_update if last_update is not None else now_ms

        if self.config.calibration_enabled:
            ref_soc = self._read_number(keys.ref_soc)
            ref_voltage = self._read_number(keys.ref_voltage)
            if ref_soc is None or ref_voltage is None:
                logger.warning(f"SOC update skipped: reference states {keys.ref_soc} and "
                               f"{keys.ref_voltage} need numeric values")
                return None
            inputs.reference = CalibrationReference(ref_soc, ref_voltage)

        return inputs

    def _compute(self, inputs: CycleInputs) -> Tuple[SOCEstimate, Optional[float]]:
        calibration = None
        if inputs.reference is not None:
            calibration = calculate_voltage_offset(inputs.reference, self.battery_config.standard_curve)

        if inputs.power is None:
            offset = calibration.offset if calibration is not None else 0.0
            estimate = self.estimator.estimate_from_voltage(
                inputs.voltage, voltage_offset=offset, timestamp_ms=inputs.now_ms)
        else:
            # Invalid reference means uncalibrated per-state curves
            offset = calibration.offset if calibration is not None and calibration.valid else None
            current = current_from_power(inputs.power, inputs.voltage)
            hours = elapsed_hours(inputs.now_ms, inputs.last_update_ms)
            estimate = self.estimator.estimate(
                inputs.voltage, current, inputs.previous_soc, hours,
                voltage_offset=offset, timestamp_ms=inputs.now_ms)

        return estimate, (calibration.offset if calibration is not None else None)

    def _persist_text(self, text: str):
        if text == self.last_text_status:
            return
        self.store.write(self.keys.soc_text, text)
        logger.info(f"SOC text status updated: {self.last_text_status} -> {text}")
        self.last_text_status = text

    def _persist(self, estimate: SOCEstimate, offset: Optional[float]):
        keys = self.keys
        self.store.write(keys.soc, estimate.soc)
        self.store.write(keys.last_update, int(estimate.timestamp_ms))
        if offset is not None:
            self.store.write(keys.voltage_offset, round(offset, 3))
        if self.config.text_status_enabled:
            self._persist_text(soc_to_text(estimate.soc))

    def update(self) -> Optional[SOCEstimate]:
        """
        Run one update cycle

        Returns:
            The new estimate, or None if the cycle was skipped or failed
        """
        try:
            self._set_cycle_state(CycleState.READING_INPUTS)
            try:
                inputs = self._read_inputs()
            except Exception as e:
                logger.error(f"Error reading SOC inputs: {e}", exc_info=True)
                return None
            if inputs is None:
                return None

            self._set_cycle_state(CycleState.COMPUTING)
            try:
                estimate, offset = self._compute(inputs)
            except Exception as e:
                logger.error(f"Error in SOC calculation: {e}", exc_info=True)
                if self.config.text_status_enabled and self.config.error_text_on_failure:
                    self._set_cycle_state(CycleState.PERSISTING)
                    try:
                        self._persist_text(SOC_TEXT_ERROR)
                    except Exception as store_error:
                        logger.error(f"Error writing SOC error status: {store_error}")
                return None

            self._set_cycle_state(CycleState.PERSISTING)
            try:
                self._persist(estimate, offset)
            except Exception as e:
                logger.error(f"Error persisting SOC: {e}", exc_info=True)
                return None

            self.last_estimate = estimate
            self.last_offset = offset
            logger.info(f"SOC updated: {estimate.soc}% ({estimate.state.value}, {estimate.voltage:.2f}V)")
            return estimate

        finally:
            self._set_cycle_state(CycleState.IDLE)

    def reset_soc(self, soc: float):
        """Set a known SOC, e.g. after a full charge"""
        value = int(clamp_soc(soc))
        self.store.write(self.keys.soc, value)
        self.store.write(self.keys.last_update, int(self.clock()))
        logger.info(f"SOC reset to {value}%")


def build_store(config: SOCSystemConfig) -> StateStore:
    """Create the configured state store backend"""
    if config.store_backend == "sqlite":
        return SQLiteStateStore(config.db_path)

    if config.store_backend == "mqtt":
        mqtt_config = get_mqtt_config()
        mqtt_config.update(config.mqtt)
        store = MqttStateStore(
            broker=mqtt_config["broker"],
            port=mqtt_config["port"],
            topic_prefix=mqtt_config["topic_prefix"],
            client_id=mqtt_config["client_id"],
            keepalive=mqtt_config["keepalive"],
        )
        if not store.connect():
            store.disconnect()
            raise ConnectionError(f"MQTT broker {mqtt_config['broker']}:{mqtt_config['port']} not reachable")
        return store

    return MemoryStateStore()


def setup_logging(config: SOCSystemConfig):
    """Configure logging for headless operation"""
    log_dir = os.path.dirname(config.log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - SOCEstimator - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(config.log_file),
            logging.StreamHandler()
        ]
    )


def main(config_file: Optional[str] = None):
    """Run the SOC service until SIGINT/SIGTERM"""
    config_file = config_file or os.environ.get("SOC_CONFIG", "soc_config.json")
    config = load_config(config_file)
    setup_logging(config)

    shutdown_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    store = None
    try:
        store = build_store(config)
        orchestrator = SOCUpdateOrchestrator(store, config)
        orchestrator.provision_states()

        scheduler = UpdateScheduler(orchestrator.update, interval_s=config.update_interval_s)
        if config.watch_inputs:
            scheduler.watch(store, config.keys.voltage)
            if orchestrator.tracks_power:
                scheduler.watch(store, config.keys.power)

        with scheduler:
            logger.info(f"SOC service started: voltage={config.keys.voltage}, "
                        f"power={config.keys.power if orchestrator.tracks_power else '-'}")
            shutdown_event.wait()

    except Exception as e:
        logger.error(f"SOC service error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if isinstance(store, MqttStateStore):
            store.disconnect()
        logger.info("SOC service stopped")


if __name__ == "__main__":
    main()
