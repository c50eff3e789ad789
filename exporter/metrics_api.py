"""Metrics API: serves the sensor gauges in Prometheus text format plus a health probe."""

from __future__ import annotations

import datetime
import logging
from typing import Callable, Optional

import cherrypy
import portend
from prometheus_client import CONTENT_TYPE_LATEST

from exporter.sensor_registry import SensorRegistry


logger = logging.getLogger(__name__)

METRICS_PATH = "/metrics"
HEALTH_PATH = "/health"
PORT_CHECK_TIMEOUT = 1.0


class MetricsServerError(RuntimeError):
    """The metrics endpoint could not bind its address."""


def _ts():
    return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class MetricsAPI:
    exposed = True

    def __init__(self, registry: SensorRegistry):
        self.registry = registry

    def GET(self, *_uri, **_params):
        cherrypy.response.headers["Content-Type"] = CONTENT_TYPE_LATEST
        return self.registry.render()


class HealthAPI:
    exposed = True

    def __init__(self, connected: Optional[Callable[[], bool]] = None):
        self.connected = connected

    @cherrypy.tools.json_out()
    def GET(self, *_uri, **_params):
        connected = bool(self.connected()) if self.connected else None
        return {"ok": True, "connected": connected, "ts": _ts()}


def start_server(
    registry: SensorRegistry,
    host: str = "0.0.0.0",
    port: int = 8080,
    connected: Optional[Callable[[], bool]] = None,
):
    """Mount the endpoints and start the CherryPy engine without blocking the caller.

    The port is checked up front: a bind failure inside the engine ends the
    process with os._exit(70), which would bypass the caller's teardown.
    """
    try:
        portend.free(host, port, timeout=PORT_CHECK_TIMEOUT)
    except portend.Timeout as exc:
        raise MetricsServerError(f"port {port} on {host} is already in use") from exc
    cherrypy.config.update(
        {
            "server.socket_host": host,
            "server.socket_port": port,
            "engine.autoreload.on": False,
            "log.screen": False,
            "checker.on": False,
        }
    )
    conf = {"/": {"request.dispatch": cherrypy.dispatch.MethodDispatcher()}}
    cherrypy.tree.mount(MetricsAPI(registry), METRICS_PATH, conf)
    cherrypy.tree.mount(HealthAPI(connected), HEALTH_PATH, conf)
    cherrypy.engine.start()
    logger.info("Serving metrics on http://%s:%s%s", host, port, METRICS_PATH)


def stop_server():
    cherrypy.engine.stop()
    logger.info("Metrics server stopped")
