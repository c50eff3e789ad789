# Device_connectors/sensor_bridge.py

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from exporter.sensor_registry import Measurement, SensorConfig, SensorKind, SensorRegistry


logger = logging.getLogger(__name__)

SENSOR_KINDS = tuple(kind.value for kind in SensorKind)
CONFIG_TOPICS = tuple(f"{kind}/+/config" for kind in SENSOR_KINDS)
DIRECT_TOPICS = tuple(f"{kind}/#" for kind in SENSOR_KINDS)

Subscriber = Callable[[str, Callable[[str, bytes], None]], None]


@dataclass(frozen=True)
class TopicParts:
    kind: str
    name: str
    leaf: str = ""


def split_topic(topic: str) -> Optional[TopicParts]:
    """``thermometers/sovrum/value`` -> TopicParts; at most three segments."""
    parts = topic.split("/", 2)
    if len(parts) < 2:
        return None
    return TopicParts(parts[0], parts[1], parts[2] if len(parts) > 2 else "")


def parse_value(payload: bytes) -> Optional[float]:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if not text or text != text.strip() or "_" in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_config(payload: bytes) -> Optional[SensorConfig]:
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    def _field(key: str) -> str:
        value = data.get(key)
        return value if isinstance(value, str) else ""

    return SensorConfig(name=_field("name"), topic=_field("topic"), area=_field("area"), floor=_field("floor"))


def _log_value(kind: SensorKind, name: str, value: float):
    logger.info("Value: %s(%s) = %.1f", kind.value, name, value)


class DirectRouter:
    """Every ``<kind>/<name>/value`` message updates the gauge keyed by name only."""

    subscriptions = DIRECT_TOPICS

    def __init__(self, registry: SensorRegistry):
        self.registry = registry

    def on_message(self, topic: str, payload: bytes) -> Optional[Measurement]:
        parts = split_topic(topic)
        if parts is None or parts.leaf != "value":
            return None
        kind = SensorKind.from_token(parts.kind)
        if kind is None:
            return None
        value = parse_value(payload)
        if value is None:
            logger.debug("Dropped non-numeric payload on %s", topic)
            return None
        _log_value(kind, parts.name, value)
        return self.registry.record(kind, parts.name, value)

    def wire(self, mqtt_client):
        for topic in self.subscriptions:
            mqtt_client.subscribe(topic, self.on_message)
        logger.info("Sensor bridge listening on %s", ", ".join(self.subscriptions))


class ConfiguringRouter:
    """Learns area/floor from ``<kind>/<name>/config`` before following that sensor's values."""

    subscriptions = CONFIG_TOPICS

    def __init__(self, registry: SensorRegistry, subscribe: Optional[Subscriber] = None):
        self.registry = registry
        self._subscribe = subscribe
        self._lock = threading.Lock()
        self._configs: Dict[Tuple[SensorKind, str], SensorConfig] = {}

    def config_for(self, kind: SensorKind, name: str) -> Optional[SensorConfig]:
        with self._lock:
            return self._configs.get((kind, name))

    def on_config(self, topic: str, payload: bytes) -> Optional[str]:
        """Store the sensor's metadata; returns the value topic when a new subscription was made."""
        parts = split_topic(topic)
        if parts is None or parts.leaf != "config":
            return None
        kind = SensorKind.from_token(parts.kind)
        if kind is None:
            return None
        config = parse_config(payload)
        if config is None:
            logger.debug("Dropped malformed config on %s", topic)
            return None
        logger.info("Config: %s(%s)", kind.value, parts.name)
        with self._lock:
            known = (kind, parts.name) in self._configs
            self._configs[(kind, parts.name)] = config
        if known:
            logger.info("Sensor %s(%s) reconfigured area=%s floor=%s", kind.value, parts.name, config.area, config.floor)
            return None
        value_topic = f"{kind.value}/{parts.name}/value"
        if self._subscribe is not None:
            self._subscribe(value_topic, self.on_value)
        return value_topic

    def on_value(self, topic: str, payload: bytes) -> Optional[Measurement]:
        parts = split_topic(topic)
        if parts is None or parts.leaf != "value":
            return None
        kind = SensorKind.from_token(parts.kind)
        if kind is None:
            return None
        config = self.config_for(kind, parts.name)
        if config is None:
            return None
        value = parse_value(payload)
        if value is None:
            logger.debug("Dropped non-numeric payload on %s", topic)
            return None
        _log_value(kind, parts.name, value)
        return self.registry.record(kind, parts.name, value, config)

    def wire(self, mqtt_client):
        self._subscribe = mqtt_client.subscribe
        for topic in self.subscriptions:
            mqtt_client.subscribe(topic, self.on_config)
        logger.info("Sensor bridge listening on %s", ", ".join(self.subscriptions))
