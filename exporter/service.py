"""Exporter service: wires the MQTT client, sensor bridge and metrics endpoint, then waits for shutdown."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import socket
import sys
import threading
import time
from typing import List, Optional

from Device_connectors.mqtt_client import BrokerConnectionError, MqttClient
from Device_connectors.sensor_bridge import ConfiguringRouter, DirectRouter
from exporter import metrics_api
from exporter.metrics_api import MetricsServerError
from exporter.sensor_registry import SensorRegistry
from logging_setup import configure_logging


logger = logging.getLogger(__name__)

DEFAULT_SERVER = "tcp://127.0.0.1:1883"
MODES = ("config", "direct")


def default_client_id() -> str:
    return socket.gethostname() + str(time.localtime().tm_sec)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mqtt-sensor-exporter",
        description="Expose MQTT thermometer and hygrometer readings as Prometheus gauges.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "-server",
        default=os.getenv("MQTT_SERVER", DEFAULT_SERVER),
        help="The full url of the MQTT server to connect to ex: tcp://127.0.0.1:1883",
    )
    parser.add_argument(
        "-clientid",
        default=os.getenv("MQTT_CLIENT_ID") or default_client_id(),
        help="A clientid for the connection",
    )
    parser.add_argument("-username", default=os.getenv("MQTT_USERNAME", ""), help="A username to authenticate to the MQTT server")
    parser.add_argument("-password", default=os.getenv("MQTT_PASSWORD", ""), help="Password to match username")
    parser.add_argument(
        "-mode",
        choices=MODES,
        default=os.getenv("EXPORTER_MODE", "config"),
        help="config: learn area/floor from <kind>/<name>/config; direct: follow <kind>/+/value by name only",
    )
    parser.add_argument("-listen", default=os.getenv("METRICS_HOST", "0.0.0.0"), help="Address for the metrics endpoint")
    parser.add_argument("-port", type=int, default=int(os.getenv("METRICS_PORT", "8080")), help="Port for the metrics endpoint")
    return parser.parse_args(argv)


def build_router(mode: str, registry: SensorRegistry):
    if mode == "direct":
        return DirectRouter(registry)
    return ConfiguringRouter(registry)


class Shutdown:
    """Collects the first stop request (signal or fatal error) and its exit code."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.exit_code = 0
        self.reason = ""

    def request(self, exit_code: int, reason: str):
        with self._lock:
            if self._event.is_set():
                return
            self.exit_code = exit_code
            self.reason = reason
            self._event.set()

    def fail(self, exc: Exception):
        self.request(1, str(exc))

    def on_signal(self, signum, _frame):
        self.request(0, f"signal {signal.Signals(signum).name} received")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


def _install_signal_handlers(shutdown: Shutdown):
    previous = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, shutdown.on_signal)
    return previous


def run(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    configured = args.mode == "config"

    registry = SensorRegistry(with_metadata=configured)
    router = build_router(args.mode, registry)
    shutdown = Shutdown()
    try:
        client = MqttClient(
            client_id=args.clientid,
            server=args.server,
            username=args.username,
            password=args.password,
            exit_on_disconnect=configured,
            on_fatal=shutdown.fail,
        )
    except ValueError as exc:
        logger.error("Invalid broker address: %s", exc)
        return 1

    previous = _install_signal_handlers(shutdown)
    server_started = False
    try:
        router.wire(client)
        try:
            client.connect()
        except BrokerConnectionError as exc:
            logger.error("%s", exc)
            return 1
        logger.info("Connected to %s mode=%s", args.server, args.mode)

        try:
            metrics_api.start_server(registry, host=args.listen, port=args.port, connected=lambda: client.is_connected)
        except MetricsServerError as exc:
            logger.error("Metrics server failed to start: %s", exc)
            return 1
        server_started = True
        shutdown.wait()
        logger.info("Exiting: %s", shutdown.reason)
        return shutdown.exit_code
    finally:
        if server_started:
            metrics_api.stop_server()
        client.disconnect()
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
