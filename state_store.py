#!/usr/bin/env python3
"""
STATE STORE
===========

Key/value state store shared with the home-automation environment.

Backends:
- MemoryStateStore: in-process dict (embedding, tests)
- SQLiteStateStore: local persistence across restarts
- MqttStateStore: retained MQTT topics, one topic per key

Every backend supports value-change subscriptions and idempotent
create-if-absent provisioning with display metadata.

Author: Research Team
Version: 1.0
"""

import json
import time
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

StateCallback = Callable[[str, Any], None]


@dataclass(frozen=True)
class StateMeta:
    """Display metadata for a state entry"""
    name: str
    type: str = "number"    # "number" or "string"
    unit: Optional[str] = None
    read: bool = True
    write: bool = False
    role: str = "value"


class StateStore(ABC):
    """Abstract key/value store with change subscriptions"""

    def __init__(self):
        self._subscribers: Dict[str, List[StateCallback]] = {}
        self._subscriber_lock = threading.Lock()

    @abstractmethod
    def read(self, key: str) -> Optional[Any]:
        """Current value of key, None if absent"""

    @abstractmethod
    def write(self, key: str, value: Any) -> None:
        """Set value of key"""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """True if key has been created"""

    @abstractmethod
    def create(self, key: str, default: Any, meta: StateMeta) -> None:
        """Create key with a default value and metadata"""

    def subscribe(self, key: str, callback: StateCallback) -> Callable[[], None]:
        """
        Call callback(key, value) on every update of key

        Returns:
            Function that removes the subscription
        """
        with self._subscriber_lock:
            self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe():
            with self._subscriber_lock:
                callbacks = self._subscribers.get(key, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def _notify(self, key: str, value: Any):
        with self._subscriber_lock:
            callbacks = list(self._subscribers.get(key, ()))
        for callback in callbacks:
            try:
                callback(key, value)
            except Exception as e:
                logger.error(f"State subscriber for {key} failed: {e}", exc_info=True)


def ensure_state(store: StateStore, key: str, default: Any, meta: StateMeta,
                 level: int = logging.INFO) -> bool:
    """
    Create key with default and metadata if it does not exist yet

    Returns:
        True if the key was created by this call
    """
    if store.exists(key):
        return False
    store.create(key, default, meta)
    logger.log(level, f"State {key} created with default {default!r}")
    return True


class MemoryStateStore(StateStore):
    """Thread-safe in-memory store"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._lock = threading.RLock()
        self._values: Dict[str, Any] = dict(initial or {})
        self._meta: Dict[str, StateMeta] = {}

    def read(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._values.get(key)

    def write(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value
        self._notify(key, value)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._values

    def create(self, key: str, default: Any, meta: StateMeta) -> None:
        with self._lock:
            self._values[key] = default
            self._meta[key] = meta

    def meta(self, key: str) -> Optional[StateMeta]:
        with self._lock:
            return self._meta.get(key)


class SQLiteStateStore(StateStore):
    """SQLite-backed store; values are stored as JSON"""

    def __init__(self, db_path: str = "soc_states.db"):
        super().__init__()
        self.db_path = db_path
        self.init_database()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init_database(self):
        """Initialize state table"""
        with self._connect() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS states (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    meta TEXT,
                    updated REAL
                )
            ''')
        logger.info(f"State database initialized: {self.db_path}")

    def read(self, key: str) -> Optional[Any]:
        with self._connect() as conn:
            row = conn.execute('SELECT value FROM states WHERE key = ?', (key,)).fetchone()
        if row is None or row[0] is None:
            return None
        return json.loads(row[0])

    def write(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute('''
                INSERT INTO states (key, value, updated) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated = excluded.updated
            ''', (key, json.dumps(value), time.time()))
        self._notify(key, value)

    def exists(self, key: str) -> bool:
        with self._connect() as conn:
            row = conn.execute('SELECT 1 FROM states WHERE key = ?', (key,)).fetchone()
        return row is not None

    def create(self, key: str, default: Any, meta: StateMeta) -> None:
        with self._connect() as conn:
            conn.execute('''
                INSERT OR IGNORE INTO states (key, value, meta, updated) VALUES (?, ?, ?, ?)
            ''', (key, json.dumps(default), json.dumps(asdict(meta)), time.time()))

    def meta(self, key: str) -> Optional[StateMeta]:
        with self._connect() as conn:
            row = conn.execute('SELECT meta FROM states WHERE key = ?', (key,)).fetchone()
        if row is None or row[0] is None:
            return None
        return StateMeta(**json.loads(row[0]))


class MqttStateStore(StateStore):
    """
    Store mirrored on retained MQTT topics

    Key "solar.battery_soc" maps to topic "<prefix>/solar.battery_soc". Inbound
    messages update a local cache and notify subscribers; writes publish
    retained JSON payloads. Subscribers are notified when the broker delivers
    a message, including the echo of our own publishes.

    After subscribing, a non-retained marker is published to
    "<prefix>/_sync/<client_id>". The broker delivers it after the retained
    values of the subscription, so once it echoes back the cache holds every
    state that exists on the broker. exists() and create() wait for that
    point.
    """

    SYNC_TOPIC = "_sync"

    def __init__(self, broker: str, port: int = 1883, topic_prefix: str = "soc_estimator",
                 client_id: str = "soc_estimator", keepalive: int = 60,
                 client: Optional[mqtt.Client] = None, sync_timeout: float = 10.0):
        super().__init__()
        self.broker = broker
        self.port = port
        self.topic_prefix = topic_prefix.rstrip("/")
        self.keepalive = keepalive
        self.sync_timeout = sync_timeout
        self.sync_topic = f"{self.topic_prefix}/{self.SYNC_TOPIC}/{client_id}"
        self.connected = threading.Event()
        self.synced = threading.Event()

        self._lock = threading.RLock()
        self._cache: Dict[str, Any] = {}

        self.client = client or mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message

    def topic_for(self, key: str) -> str:
        return f"{self.topic_prefix}/{key}"

    def connect(self, timeout: float = 10.0) -> bool:
        """Connect, start the network loop and wait for retained values"""
        self.client.connect(self.broker, self.port, self.keepalive)
        self.client.loop_start()
        if not self.connected.wait(timeout):
            logger.error(f"MQTT connection to {self.broker}:{self.port} timed out")
            return False
        if not self.synced.wait(timeout):
            logger.error(f"Retained states under {self.topic_prefix} not received within {timeout}s")
            return False
        logger.info(f"MQTT state cache synchronized: {len(self._cache)} states")
        return True

    def disconnect(self):
        self.client.loop_stop()
        self.client.disconnect()
        self.connected.clear()

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            logger.info(f"MQTT connected to {self.broker}:{self.port}")
            client.subscribe(f"{self.topic_prefix}/#")
            self.connected.set()
        else:
            logger.error(f"MQTT connection failed: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self.connected.clear()
        logger.warning(f"MQTT disconnected: {reason_code}")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        client.publish(self.sync_topic, str(mid), qos=1)

    def _on_message(self, client, userdata, msg):
        if msg.topic == self.sync_topic:
            if not self.synced.is_set():
                logger.debug(f"Retained states received from {self.topic_prefix}")
            self.synced.set()
            return

        prefix = self.topic_prefix + "/"
        if not msg.topic.startswith(prefix) or msg.topic.endswith("/meta"):
            return
        key = msg.topic[len(prefix):]
        if key.startswith(self.SYNC_TOPIC + "/"):
            return

        try:
            text = msg.payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning(f"Ignoring non UTF-8 payload on {msg.topic}")
            return
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            value = text  # plain string payloads from other publishers

        with self._lock:
            self._cache[key] = value
        self._notify(key, value)

    def _wait_synced(self):
        if not self.synced.wait(self.sync_timeout):
            raise ConnectionError(f"Retained states under {self.topic_prefix} not received yet")

    def read(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._cache.get(key)

    def write(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value
        self.client.publish(self.topic_for(key), json.dumps(value), retain=True)

    def exists(self, key: str) -> bool:
        self._wait_synced()
        with self._lock:
            return key in self._cache

    def create(self, key: str, default: Any, meta: StateMeta) -> None:
        self._wait_synced()
        topic = self.topic_for(key)
        with self._lock:
            if key in self._cache:
                return
            self._cache[key] = default
        self.client.publish(f"{topic}/meta", json.dumps(asdict(meta)), retain=True)
        self.client.publish(topic, json.dumps(default), retain=True)
