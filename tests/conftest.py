"""Shared fixtures: Prometheus text parsing and a resettable logging setup."""

import logging
from typing import Dict, List, Optional, Tuple, Union

import pytest
from prometheus_client.parser import text_string_to_metric_families


Sample = Tuple[str, Dict[str, str], float]


def _samples(text: Union[str, bytes]) -> List[Sample]:
    if isinstance(text, bytes):
        text = text.decode("utf-8")
    return [
        (sample.name, dict(sample.labels), sample.value)
        for family in text_string_to_metric_families(text)
        for sample in family.samples
    ]


def _sample_value(text: Union[str, bytes], metric: str, **labels: str) -> Optional[float]:
    for name, sample_labels, value in _samples(text):
        if name == metric and sample_labels == labels:
            return value
    return None


@pytest.fixture
def scrape():
    return _samples


@pytest.fixture
def sample_value():
    return _sample_value


@pytest.fixture
def fresh_logging(monkeypatch):
    """Let configure_logging run again and undo its handlers afterwards."""
    import logging_setup

    monkeypatch.setattr(logging_setup, "_CONFIGURED", False)
    loggers = [logging.getLogger()] + [logging.getLogger(name) for name in logging_setup.LOGGER_NAMES]
    saved = [(logger, list(logger.handlers), logger.level, logger.propagate) for logger in loggers]
    yield
    for logger, handlers, level, propagate in saved:
        for handler in list(logger.handlers):
            if handler not in handlers:
                handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(level)
        logger.propagate = propagate
