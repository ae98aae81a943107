"""Shared base class for in-process mock providers."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.config import Settings

MOCK_DELAYS: dict[str, float] = {
    "store": 0.0,
    "executor": 0.05,
    "notifier": 0.01,
}


class MockBase:
    """Base class for mock providers.

    Holds the settings and adds optional artificial latency so the worker
    loop behaves realistically in demos.
    """

    provider_key: str = ""  # Override in subclasses (e.g. "executor", "notifier")

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def _simulate_delay(self) -> None:
        """Sleep to simulate real latency, if delay is enabled."""
        if self._settings.mock_delay_enabled:
            delay = MOCK_DELAYS.get(self.provider_key, 0.02)
            if delay > 0:
                await asyncio.sleep(delay)
