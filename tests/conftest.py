"""Shared test fixtures for the Fleetguard test suite."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.config import Settings
from app.services import Services, build_services


@pytest.fixture
def mock_settings() -> Settings:
    """Return a Settings instance wired to the in-memory providers."""
    return Settings(
        fleetguard_mode="mock",
        storage_mode="",
        executor_mode="",
        notifier_mode="",
        mock_delay_enabled=False,
        incident_notify_target="oncall@example.com",
    )


@pytest.fixture
def services(mock_settings) -> Services:
    return build_services(mock_settings)


@pytest.fixture
def store(services):
    return services.registry.storage


@pytest.fixture
def executor(services):
    return services.registry.executor


@pytest.fixture
def notifier(services):
    return services.registry.notifier


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
