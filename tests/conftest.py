"""
Shared pytest fixtures for streamer tests.

Everything runs against test doubles; no broker, browser or ffmpeg is needed.
"""

import pytest

from core.config_loader import StreamerConfig
from tests.test_doubles import FakeBrowser, FakeSpawner


@pytest.fixture
def streamer_config(tmp_path):
    """A valid config with fast timers and a throwaway snapshot path."""
    config = StreamerConfig()
    config.encoder.stream_key = "live_test_key"
    config.encoder.fps = 50
    config.browser.dashboard_url = "http://dashboard.local/d/ops"
    config.supervisor.startup_image = str(tmp_path / "missing.png")
    config.supervisor.snapshot_path = str(tmp_path / "runtime.json")
    return config


@pytest.fixture
def fake_browser():
    return FakeBrowser()


@pytest.fixture
def fake_spawner():
    return FakeSpawner()

