"""Shared fixtures for region capture tests."""

import pytest
import structlog


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


@pytest.fixture(autouse=True)
def reset_structlog():
    """Keep structlog configuration from leaking between tests."""
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove REGION_CAPTURE_* variables so settings use their defaults."""
    import os

    for key in list(os.environ):
        if key.startswith("REGION_CAPTURE_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
