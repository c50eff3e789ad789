"""Latest-value store for thermometer and hygrometer readings.

Backed by a private prometheus_client ``CollectorRegistry`` so that the router
(writer) and the scrape endpoint (reader) share one explicitly constructed
object instead of module globals. Gauge children carry their own locks, so
callers never synchronise around ``record`` or ``render``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from prometheus_client import CollectorRegistry, Gauge, generate_latest


logger = logging.getLogger(__name__)

TEMPERATURE_METRIC = "thermometer_temperature_celsius"
HUMIDITY_METRIC = "hygrometer_humidity_percent"


class SensorKind(Enum):
    THERMOMETER = "thermometers"
    HYGROMETER = "hygrometers"

    @classmethod
    def from_token(cls, token: str) -> Optional["SensorKind"]:
        # case-sensitive on purpose: "Thermometers" is not a kind
        for kind in cls:
            if kind.value == token:
                return kind
        return None

    @property
    def singular(self) -> str:
        return self.value[:-1]


@dataclass(frozen=True)
class SensorConfig:
    name: str
    topic: str = ""
    area: str = ""
    floor: str = ""


@dataclass(frozen=True)
class Measurement:
    kind: SensorKind
    name: str
    value: float
    config: Optional[SensorConfig] = None
    observed_at: float = 0.0


class SensorRegistry:
    """Two gauge families keyed by sensor name (and area/floor when configured)."""

    def __init__(self, with_metadata: bool = True, registry: Optional[CollectorRegistry] = None):
        self.with_metadata = with_metadata
        self.registry = registry or CollectorRegistry()
        self._gauges: Dict[SensorKind, Gauge] = {
            SensorKind.THERMOMETER: Gauge(
                TEMPERATURE_METRIC,
                "Current temperature of the thermometer.",
                self.label_names(SensorKind.THERMOMETER),
                registry=self.registry,
            ),
            SensorKind.HYGROMETER: Gauge(
                HUMIDITY_METRIC,
                "Current humidity of the hygrometer.",
                self.label_names(SensorKind.HYGROMETER),
                registry=self.registry,
            ),
        }

    def label_names(self, kind: SensorKind) -> List[str]:
        if self.with_metadata:
            return ["sensor_name", "area", "floor"]
        return [kind.singular]

    def labels_for(self, kind: SensorKind, name: str, config: Optional[SensorConfig] = None) -> Dict[str, str]:
        if not self.with_metadata:
            return {kind.singular: name}
        config = config or SensorConfig(name=name)
        return {"sensor_name": name, "area": config.area, "floor": config.floor}

    def record(self, kind: SensorKind, name: str, value: float, config: Optional[SensorConfig] = None) -> Measurement:
        """Overwrite the gauge for this sensor with ``value`` (last write wins)."""
        labels = self.labels_for(kind, name, config)
        self._gauges[kind].labels(**labels).set(value)
        logger.debug("Gauge %s%s set to %s", self.metric_name(kind), labels, value)
        return Measurement(kind=kind, name=name, value=value, config=config, observed_at=time.time())

    def value(self, kind: SensorKind, name: str, config: Optional[SensorConfig] = None) -> Optional[float]:
        return self.registry.get_sample_value(self.metric_name(kind), self.labels_for(kind, name, config))

    def render(self) -> bytes:
        return generate_latest(self.registry)

    @staticmethod
    def metric_name(kind: SensorKind) -> str:
        if kind is SensorKind.THERMOMETER:
            return TEMPERATURE_METRIC
        return HUMIDITY_METRIC
