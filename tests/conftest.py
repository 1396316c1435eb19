"""Shared fixtures for the streamer test suite."""

import copy
import io
import json

import pytest

from fakes import FakeLibcamera, ManualLoop
from udpcam.config.load import DEFAULT_CONFIG
from udpcam.logging.json_logger import JsonLogger


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring a real camera and GStreamer"
    )


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--run-hardware",
        action="store_true",
        default=False,
        help="Run tests that require a real camera and GStreamer",
    )


def pytest_collection_modifyitems(config, items):
    """Skip hardware tests unless --run-hardware is specified."""
    if config.getoption("--run-hardware"):
        return

    skip_hardware = pytest.mark.skip(reason="Need --run-hardware option to run")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)


class LogCapture(io.StringIO):
    """Diagnostic stream that can be read back as parsed entries."""

    def entries(self, event=None):
        lines = [json.loads(line) for line in self.getvalue().splitlines() if line]
        if event is None:
            return lines
        return [entry for entry in lines if entry["evt"] == event]

    def events(self):
        return [entry["evt"] for entry in self.entries()]


@pytest.fixture
def config():
    """Default configuration with a small frame and a destination set."""
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["camera"]["width"] = 64
    cfg["camera"]["height"] = 48
    cfg["rtp"]["destination_ip"] = "192.168.1.50"
    cfg["rtp"]["destination_port"] = 5000
    cfg["logging"]["level"] = "debug"
    return cfg


@pytest.fixture
def log_stream():
    return LogCapture()


@pytest.fixture
def logger(config, log_stream):
    json_logger = JsonLogger(config, stream=log_stream)
    yield json_logger
    json_logger.close()


@pytest.fixture
def lc():
    bindings = FakeLibcamera()
    yield bindings
    bindings.close()


@pytest.fixture
def loop():
    return ManualLoop()
