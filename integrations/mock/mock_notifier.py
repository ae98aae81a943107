"""Mock notification dispatcher that records every message it is asked to send."""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.models import NotifyResult
from integrations.base import NotificationDispatcher
from integrations.mock.base import MockBase

if TYPE_CHECKING:
    from app.config import Settings


class MockNotifier(MockBase, NotificationDispatcher):
    provider_key = "notifier"

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.sent: list[dict[str, str]] = []
        self.fail_next = False

    async def notify(self, kind: str, target: str, title: str, detail: str) -> NotifyResult:
        await self._simulate_delay()
        if self.fail_next:
            self.fail_next = False
            return NotifyResult(ok=False, error="simulated delivery failure")
        self.sent.append({"kind": kind, "target": target, "title": title, "detail": detail})
        return NotifyResult(ok=True)
