#!/usr/bin/env python3
"""
SOC UPDATE SCHEDULER
====================

Triggers the SOC update routine periodically and on changes of watched
input states. At most one update runs at a time; triggers arriving during a
running update are coalesced into a single rerun.

Author: Research Team
Version: 1.0
"""

import logging
import threading
from typing import Any, Callable, List, Optional

from state_store import StateStore

logger = logging.getLogger(__name__)


class UpdateScheduler:
    """Periodic and change-driven dispatcher for one update callback"""

    def __init__(self, callback: Callable[[], Any], interval_s: float = 60.0,
                 name: str = "soc-update"):
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")

        self.callback = callback
        self.interval_s = interval_s
        self.name = name
        self.cycles_run = 0

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribers: List[Callable[[], None]] = []

        self._lock = threading.Lock()
        self._running = False
        self._pending = False

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def watch(self, store: StateStore, key: str):
        """Trigger an update whenever key is written; released by stop()"""
        self._unsubscribers.append(store.subscribe(key, self._on_value_change))
        logger.info(f"Watching {key} for changes")

    def _on_value_change(self, key: str, value: Any):
        logger.debug(f"{key} changed to {value!r}")
        self.trigger(f"change:{key}")

    def trigger(self, reason: str = "manual") -> bool:
        """
        Run the update callback unless one is already running

        Returns:
            True if this call ran the callback, False if it was coalesced
            into the update currently in progress
        """
        with self._lock:
            if self._running:
                self._pending = True
                logger.debug(f"Update already running, coalescing trigger ({reason})")
                return False
            self._running = True

        try:
            while True:
                logger.debug(f"Update triggered ({reason})")
                self.callback()
                self.cycles_run += 1
                with self._lock:
                    if not self._pending:
                        self._running = False
                        return True
                    self._pending = False
                reason = "coalesced"
        except BaseException:
            with self._lock:
                self._running = False
                self._pending = False
            raise

    def _timer_loop(self):
        while not self._stop_event.wait(self.interval_s):
            try:
                self.trigger("timer")
            except Exception as e:
                logger.error(f"Scheduled update error: {e}", exc_info=True)

    def start(self, run_immediately: bool = True):
        """Start the periodic timer, optionally running one update first"""
        if self.is_running:
            logger.warning(f"Scheduler {self.name} already running")
            return

        self._stop_event.clear()
        if run_immediately:
            self.trigger("startup")

        self._thread = threading.Thread(target=self._timer_loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Scheduler {self.name} started: every {self.interval_s}s")

    def stop(self, timeout: float = 5.0):
        """Cancel the timer and release all change subscriptions"""
        self._stop_event.set()

        while self._unsubscribers:
            self._unsubscribers.pop()()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        logger.info(f"Scheduler {self.name} stopped")

    def __enter__(self) -> "UpdateScheduler":
        try:
            self.start()
        except BaseException:
            self.stop()
            raise
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.stop()
        return False
