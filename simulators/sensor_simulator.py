"""Local sensor simulator that announces sensor configs and publishes drifting readings."""

from __future__ import annotations

import json
import logging
import os
import random
import threading
from typing import Dict, List

from Device_connectors.mqtt_client import MqttClient
from exporter.sensor_registry import SensorKind


logger = logging.getLogger(__name__)

# name:area[:floor] entries, comma separated
DEFAULT_SENSORS = "livingroom:living-room:1,sovrum:bedroom:2,bath:bathroom:1"

START_VALUES = {
    SensorKind.THERMOMETER: (20.0, 23.0),
    SensorKind.HYGROMETER: (40.0, 55.0),
}
LIMITS = {
    SensorKind.THERMOMETER: (10.0, 35.0),
    SensorKind.HYGROMETER: (15.0, 95.0),
}


def parse_sensor_list(text: str) -> List[Dict[str, str]]:
    sensors = []
    for entry in text.split(","):
        fields = entry.strip().split(":")
        if not fields[0]:
            continue
        sensors.append(
            {
                "name": fields[0],
                "area": fields[1] if len(fields) > 1 else "",
                "floor": fields[2] if len(fields) > 2 else "",
            }
        )
    return sensors


class SensorSimulator:
    def __init__(self, mqtt_client: MqttClient, sensors: List[Dict[str, str]], loop_sec: int = 10):
        self._mqtt = mqtt_client
        self.sensors = sensors
        self.loop_sec = loop_sec
        self._values: Dict[tuple, float] = {}
        self._stop = threading.Event()

    def announce(self):
        """Publish a retained config for every sensor of every kind."""
        for kind in SensorKind:
            for sensor in self.sensors:
                name = sensor["name"]
                value_topic = f"{kind.value}/{name}/value"
                payload = {"name": name, "topic": value_topic, "area": sensor["area"]}
                if sensor["floor"]:
                    payload["floor"] = sensor["floor"]
                self._mqtt.publish(f"{kind.value}/{name}/config", json.dumps(payload), retain=True)
                self._values[(kind, name)] = random.uniform(*START_VALUES[kind])
        logger.info("Announced %d sensors per kind", len(self.sensors))

    def step(self) -> Dict[tuple, float]:
        for (kind, name), value in list(self._values.items()):
            low, high = LIMITS[kind]
            step = 0.2 if kind is SensorKind.THERMOMETER else 0.6
            value = max(low, min(high, value + random.uniform(-step, step)))
            self._values[(kind, name)] = value
            self._mqtt.publish(f"{kind.value}/{name}/value", f"{value:.2f}")
            logger.info("Published %s(%s) = %.2f", kind.value, name, value)
        return dict(self._values)

    def run_forever(self):
        self.announce()
        while not self._stop.is_set():
            self.step()
            if self._stop.wait(self.loop_sec):
                break

    def stop(self):
        self._stop.set()


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    server = os.getenv("MQTT_SERVER", "tcp://127.0.0.1:1883")
    loop_sec = int(os.getenv("SIM_LOOP_SEC", "5"))
    sensors = parse_sensor_list(os.getenv("SIM_SENSORS", DEFAULT_SENSORS))
    client = MqttClient(client_id="sensor_simulator", server=server)
    client.connect()
    simulator = SensorSimulator(client, sensors, loop_sec=loop_sec)
    try:
        simulator.run_forever()
    except KeyboardInterrupt:
        simulator.stop()
    finally:
        client.disconnect()


if __name__ == "__main__":
    main()
