"""Notification dispatcher that writes notifications to the application log."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.models import NotifyResult
from integrations.base import NotificationDispatcher

if TYPE_CHECKING:
    from app.config import Settings

logger = logging.getLogger(__name__)


class LogNotifier(NotificationDispatcher):
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def notify(self, kind: str, target: str, title: str, detail: str) -> NotifyResult:
        if not target:
            return NotifyResult(ok=False, error="No notification target configured")
        logger.info("notify kind=%s target=%s title=%s detail=%s", kind, target, title, detail)
        return NotifyResult(ok=True)
