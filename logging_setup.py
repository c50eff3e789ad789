"""Logging for the exporter.

Per-reading traffic (router, registry, simulator) goes to ``sensors.log``;
broker and HTTP lifecycle messages go to ``bridge.log``. Both files rotate
under ``LOG_DIR`` and everything is echoed to stderr at ``LOG_LEVEL``.
"""

from __future__ import annotations

import os
from logging.config import dictConfig
from typing import Any, Dict

LOG_FILES = {
    "sensors": (
        "Device_connectors.sensor_bridge",
        "exporter.sensor_registry",
        "simulators.sensor_simulator",
    ),
    "bridge": (
        "Device_connectors.mqtt_client",
        "exporter.metrics_api",
        "exporter.service",
        "cherrypy.error",
    ),
}
LOGGER_NAMES = tuple(name for names in LOG_FILES.values() for name in names)

_CONFIGURED = False


def _log_dir() -> str:
    log_dir = os.environ.get("LOG_DIR", "/tmp/logs")
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError:
        return "/tmp"
    return log_dir


def build_config(log_dir: str) -> Dict[str, Any]:
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
            "stream": "ext://sys.stderr",
            "level": os.environ.get("LOG_LEVEL", "INFO"),
        },
    }
    loggers: Dict[str, Dict[str, Any]] = {}
    for file_name, names in LOG_FILES.items():
        handlers[file_name] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": os.path.join(log_dir, f"{file_name}.log"),
            "maxBytes": 1_000_000,
            "backupCount": 3,
            "encoding": "utf-8",
            "formatter": "detailed",
        }
        for name in names:
            loggers[name] = {"handlers": [file_name, "console"], "level": "INFO", "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
            "detailed": {"format": "%(asctime)s %(levelname)s %(name)s [%(filename)s:%(lineno)d]: %(message)s"},
        },
        "handlers": handlers,
        "root": {"handlers": ["console"], "level": os.environ.get("LOG_LEVEL_ROOT", "WARNING")},
        "loggers": loggers,
    }


def configure_logging() -> None:
    """Apply the configuration once per process."""
    global _CONFIGURED
    if _CONFIGURED:
        return
    dictConfig(build_config(_log_dir()))
    _CONFIGURED = True
