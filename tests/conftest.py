"""
Pytest configuration and fixtures.

This file provides pytest-specific configuration and fixtures.
For standard test utilities, see tests/__init__.py
"""

import pytest

from tests.mocks.notifier_mocks import FakeClock


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as requiring Redis (deselect with '-m \"not integration\"')"
    )


@pytest.fixture
def clock():
    """Deterministic clock starting at 2026-01-05 12:00:00 UTC (a Monday)."""
    return FakeClock(1767614400.0)


@pytest.fixture(autouse=True)
def no_dry_run(monkeypatch):
    """Sinks must not pick up a dry-run flag from the developer's shell."""
    monkeypatch.delenv("NOTIFICATION_DRY_RUN", raising=False)
