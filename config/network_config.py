#!/usr/bin/env python3
"""
Network Configuration
=====================
MQTT broker settings for the state store link to the home-automation system.
Environment variables override the defaults:
- SOC_MQTT_BROKER, SOC_MQTT_PORT, SOC_MQTT_PREFIX, SOC_MQTT_CLIENT_ID
"""

import os
from typing import Any, Dict

MQTT_SERVER = "localhost"
MQTT_PORT = 1883
MQTT_KEEPALIVE = 60
MQTT_TOPIC_PREFIX = "soc_estimator"
MQTT_CLIENT_ID = "soc_estimator"


def get_mqtt_config() -> Dict[str, Any]:
    """MQTT settings with environment overrides applied"""
    return {
        "broker": os.environ.get("SOC_MQTT_BROKER", MQTT_SERVER),
        "port": int(os.environ.get("SOC_MQTT_PORT", MQTT_PORT)),
        "keepalive": MQTT_KEEPALIVE,
        "topic_prefix": os.environ.get("SOC_MQTT_PREFIX", MQTT_TOPIC_PREFIX),
        "client_id": os.environ.get("SOC_MQTT_CLIENT_ID", MQTT_CLIENT_ID),
    }
