"""
Pytest configuration and shared fixtures for the signaling relay test suite.
"""

import pytest
from fastapi.testclient import TestClient

import app as app_module
import routers.stats as stats_module
from app import app
from backend import SignalingBackend


@pytest.fixture
def backend():
    """A fresh signaling core with empty tables."""
    return SignalingBackend()


@pytest.fixture
def connected(backend):
    """Register the given connection ids on the backend, in order."""

    def _connect(*connection_ids):
        for connection_id in connection_ids:
            backend.connect(connection_id)
        return connection_ids

    return _connect


@pytest.fixture
def live_backend(monkeypatch):
    """A fresh core wired into the WebSocket endpoint and the stats routes."""
    fresh = SignalingBackend()
    monkeypatch.setattr(app_module, "signaling_backend", fresh)
    monkeypatch.setattr(stats_module, "signaling_backend", fresh)
    return fresh


@pytest.fixture
def client(live_backend):
    """Test client sharing one event loop across every WebSocket it opens."""
    with TestClient(app) as test_client:
        yield test_client
