"""Escalation sweep for unacknowledged incidents."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from core.incidents import DEFAULT_TIMER_POLICIES, IncidentTimerPolicy, escalation_due_at
from core.metrics import MetricsRegistry
from core.models import IncidentRun, IncidentState, IncidentTimelineEvent, Severity, SweepResult
from integrations.base import NotificationDispatcher, StorageProvider

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_LIMIT = 25
MAX_SWEEP_LIMIT = 200


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EscalationSweep:
    """Escalates open incidents whose acknowledgement or escalation deadline has passed.

    Meant to be invoked periodically by the worker. Each incident is handled in
    isolation: one that fails to escalate is reported in ``failed_ids`` and the
    sweep moves on.
    """

    def __init__(
        self,
        storage: StorageProvider,
        metrics: MetricsRegistry,
        timers: dict[Severity, IncidentTimerPolicy] | None = None,
        notifier: NotificationDispatcher | None = None,
        notify_target: str = "",
    ) -> None:
        self._storage = storage
        self._metrics = metrics
        self._timers = timers or DEFAULT_TIMER_POLICIES
        self._notifier = notifier
        self._notify_target = notify_target

    async def sweep(self, limit: int | None = None, now: datetime | None = None) -> SweepResult:
        now = now or _now()
        bounded = max(1, min(MAX_SWEEP_LIMIT, limit or DEFAULT_SWEEP_LIMIT))

        candidates: list[tuple[datetime, IncidentRun]] = []
        for incident in await self._storage.list_incidents(states=[IncidentState.OPEN]):
            due_at = escalation_due_at(incident)
            if due_at is not None and due_at <= now:
                candidates.append((due_at, incident))
        candidates.sort(key=lambda pair: (pair[0], pair[1].id))
        due = [incident for _, incident in candidates[:bounded]]

        escalated: list[str] = []
        failed: list[str] = []
        for incident in due:
            try:
                stored = await self._escalate(incident, now)
            except Exception:
                logger.exception("Escalation failed for incident %s", incident.id)
                failed.append(incident.id)
                continue
            if stored is None:
                logger.info("Incident %s changed during sweep, skipping", incident.id)
                continue
            escalated.append(stored.id)
            await self._notify(stored)

        remaining = [
            escalation_due_at(i)
            for i in await self._storage.list_incidents(states=[IncidentState.OPEN])
        ]
        pending = [ts for ts in remaining if ts is not None]
        result = SweepResult(
            ok=not failed,
            evaluated=len(due),
            escalated=len(escalated),
            incident_ids=escalated,
            failed_ids=failed,
            next_due_at=min(pending) if pending else None,
        )
        if due:
            logger.info(
                "Escalation sweep evaluated=%d escalated=%d failed=%d",
                result.evaluated,
                result.escalated,
                len(failed),
            )
        return result

    async def _escalate(self, incident: IncidentRun, now: datetime) -> IncidentRun | None:
        minutes = self._timers[incident.severity].escalation_minutes
        count = incident.escalation_count + 1
        updated = incident.model_copy(
            update={
                "escalation_count": count,
                "escalated_at": now,
                "next_escalation_at": now + timedelta(minutes=minutes),
                "updated_at": now,
            }
        )
        event = IncidentTimelineEvent(
            id=f"evt-{uuid.uuid4().hex[:8]}",
            incident_id=incident.id,
            type="incident.escalated",
            message=f"Escalation #{count} triggered",
            event_ts=now,
            meta={
                "escalation_count": count,
                "severity": incident.severity.value,
                "next_escalation_at": updated.next_escalation_at.isoformat(),
            },
        )
        stored = await self._storage.transition_incident(updated, incident.revision, event)
        if stored is not None:
            self._metrics.escalations_total.labels(severity=incident.severity.value).inc()
        return stored

    async def _notify(self, incident: IncidentRun) -> None:
        if self._notifier is None or not self._notify_target:
            return
        kind = "webhook" if self._notify_target.startswith("http") else "email"
        try:
            result = await self._notifier.notify(
                kind,
                self._notify_target,
                f"[{incident.severity.value}] Incident escalated: {incident.title}",
                f"Incident {incident.id} escalation #{incident.escalation_count}; not yet acknowledged.",
            )
        except Exception as exc:
            logger.warning("Escalation notification for %s raised: %s", incident.id, exc)
            return
        if not result.ok:
            logger.warning("Escalation notification for %s failed: %s", incident.id, result.error)
