"""Shared fixtures: fast settings, a mocked page network and a service client."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from subtap.config import Settings
from subtap.main import app
from subtap.runtime import create_runtime

from tests.support import FakeClock, MockNetwork


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def network():
    return MockNetwork()


@pytest.fixture
def fast_settings(tmp_path):
    """Settings with short delays and downloads going to a temp dir."""
    return Settings(
        cache_ttl=300.0,
        capture_wait_ms=100,
        ready_resend_delay=0.01,
        settle_delay=0.01,
        success_revert_delay=0.05,
        error_revert_delay=0.05,
        preferred_language="en",
        fallback_language="en",
        download_dir=str(tmp_path / "downloads"),
        rate_limit_enabled=False,
    )


@pytest.fixture
def client(fast_settings, network):
    """FastAPI TestClient whose runtime talks to the mocked network."""
    def runtime_factory(config):
        return create_runtime(fast_settings, client=network.client())

    # Mock rate limiting to always allow during tests
    with patch("subtap.main._check_rate_limit", return_value=True):
        with patch("subtap.main.create_runtime", side_effect=runtime_factory):
            with TestClient(app) as test_client:
                yield test_client
