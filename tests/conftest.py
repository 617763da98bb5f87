"""Pytest configuration and shared fixtures."""

import threading
import time
import pytest
from pathlib import Path
from tempfile import TemporaryDirectory

from nanodc_monitor.collectors.base import BaseCollector
from nanodc_monitor.data.models import Entity


class ScriptedCollector(BaseCollector):
    """Collector that replays a script of responses.

    Each step is an entity tuple to return, an exception to raise, or a
    callable ``(site_id, cancel_event)`` whose return value is used. Once the
    script runs out, ``default`` is returned.
    """

    def __init__(self, steps=None, default=()):
        self.steps = list(steps or [])
        self.default = default
        self.calls = []
        self._lock = threading.Lock()

    @property
    def name(self):
        return "scripted"

    @property
    def display_name(self):
        return "Scripted Collector"

    def is_available(self):
        return True

    def fetch(self, site_id, cancel_event=None):
        with self._lock:
            self.calls.append((site_id, time.monotonic()))
            step = self.steps.pop(0) if self.steps else self.default
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(site_id, cancel_event)
        return step


def wait_for(predicate, timeout=2.0, interval=0.005):
    """Poll until predicate() is truthy or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def temp_data_dir():
    """Create a temporary data directory for tests."""
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def scripted_collector():
    """Factory for scripted collectors."""
    return ScriptedCollector


@pytest.fixture
def wait_until():
    return wait_for


@pytest.fixture
def sample_nodes_payload():
    """Sample NanoDC node list response."""
    return {
        "nanodc_id": "bc02",
        "nodes": [
            {"node_name": "BC02 NAS1", "cpu_usage": 12.5, "disk_usage": 71.0},
            {"node_name": "BC02 Filecoin Miner Node", "cpu_usage": 88.1, "status": "online"},
            {"node_name": "BC02 3080Ti Worker", "gpu_usage": 97.0},
            {"node_name": "BC02 Post Worker", "cpu_usage": 45.0},
            {"node_name": "BC02 NAS2", "disk_usage": 40.2},
            {"cpu_usage": 3.0},
        ],
    }


@pytest.fixture
def bc02_catalog():
    """Entity catalog as the BC02 site reports it."""
    return (
        Entity("NAS-East"),
        Entity("BC02 Filecoin Miner Node", {"cpu_usage": 88.1}),
        Entity("BC02 GPU Worker 1", {"gpu_usage": 97.0}),
        Entity("BC02 Post Worker", {"cpu_usage": 45.0}),
        Entity("BC02 NAS1", {"disk_usage": 71.0}),
        Entity("BC02 NAS3", {"disk_usage": 12.0}),
    )
