"""In-memory storage provider with compare-and-set semantics."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

from core.models import (
    AuditEntry,
    Host,
    IncidentRun,
    IncidentState,
    IncidentTimelineEvent,
    RemediationRun,
    RunMode,
    RunState,
)
from core.runtime import is_ready
from integrations.base import StorageProvider
from integrations.mock.base import MockBase

if TYPE_CHECKING:
    from app.config import Settings


class MemoryStore(MockBase, StorageProvider):
    """Process-local store. Copies on the way in and out, like a real database row."""

    provider_key = "store"

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._lock = asyncio.Lock()
        self._hosts: dict[str, Host] = {}
        self._runs: dict[str, RemediationRun] = {}
        self._incidents: dict[str, IncidentRun] = {}
        self._events: list[IncidentTimelineEvent] = []
        self._audit: list[AuditEntry] = []

    # ------------------------------------------------------------------
    # Hosts
    # ------------------------------------------------------------------

    async def get_host(self, host_id: str) -> Host | None:
        host = self._hosts.get(host_id)
        return host.model_copy(deep=True) if host else None

    async def list_hosts(self, enabled_only: bool = False) -> list[Host]:
        return [
            h.model_copy(deep=True)
            for h in self._hosts.values()
            if h.enabled or not enabled_only
        ]

    async def save_host(self, host: Host) -> Host:
        async with self._lock:
            self._hosts[host.id] = host.model_copy(deep=True)
        return host

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def create_run(self, run: RemediationRun) -> RemediationRun:
        async with self._lock:
            if run.id in self._runs:
                raise ValueError(f"Duplicate run id '{run.id}'")
            self._runs[run.id] = run.model_copy(deep=True)
        return run

    async def get_run(self, run_id: str) -> RemediationRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def update_run(
        self, run: RemediationRun, expected_state: RunState
    ) -> RemediationRun | None:
        await self._simulate_delay()
        async with self._lock:
            stored = self._runs.get(run.id)
            if stored is None:
                return None
            if stored.state != expected_state or stored.revision != run.revision:
                return None
            updated = run.model_copy(update={"revision": stored.revision + 1}, deep=True)
            self._runs[run.id] = updated
        return updated.model_copy(deep=True)

    def _filter_runs(
        self,
        host_id: str | None,
        action_id: str | None,
        mode: RunMode | None,
        states: list[RunState] | None,
        dlq: bool | None,
        requested_since: datetime | None,
        auto_queued: bool | None,
    ) -> list[RemediationRun]:
        out = []
        for run in self._runs.values():
            if host_id is not None and run.host_id != host_id:
                continue
            if action_id is not None and run.action_id != action_id:
                continue
            if mode is not None and run.mode != mode:
                continue
            if states is not None and run.state not in states:
                continue
            if dlq is not None and run.dlq != dlq:
                continue
            if requested_since is not None and run.requested_at < requested_since:
                continue
            if auto_queued is not None and run.auto_queued != auto_queued:
                continue
            out.append(run)
        return out

    async def list_runs(
        self,
        host_id: str | None = None,
        action_id: str | None = None,
        mode: RunMode | None = None,
        states: list[RunState] | None = None,
        dlq: bool | None = None,
        requested_since: datetime | None = None,
        auto_queued: bool | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[RemediationRun]:
        runs = self._filter_runs(
            host_id, action_id, mode, states, dlq, requested_since, auto_queued
        )
        runs.sort(key=lambda r: (r.requested_at, r.id), reverse=newest_first)
        if limit is not None:
            runs = runs[:limit]
        return [r.model_copy(deep=True) for r in runs]

    async def list_ready_runs(self, now: datetime, limit: int) -> list[RemediationRun]:
        runs = [r for r in self._runs.values() if is_ready(r, now)]
        runs.sort(key=lambda r: (r.requested_at, r.id))
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def count_runs(
        self,
        host_id: str | None = None,
        action_id: str | None = None,
        mode: RunMode | None = None,
        states: list[RunState] | None = None,
        requested_since: datetime | None = None,
        auto_queued: bool | None = None,
    ) -> int:
        return len(
            self._filter_runs(host_id, action_id, mode, states, None, requested_since, auto_queued)
        )

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    async def create_incident(
        self, incident: IncidentRun, events: list[IncidentTimelineEvent]
    ) -> IncidentRun:
        async with self._lock:
            if incident.id in self._incidents:
                raise ValueError(f"Duplicate incident id '{incident.id}'")
            self._incidents[incident.id] = incident.model_copy(deep=True)
            self._events.extend(e.model_copy(deep=True) for e in events)
        return incident

    async def get_incident(self, incident_id: str) -> IncidentRun | None:
        incident = self._incidents.get(incident_id)
        return incident.model_copy(deep=True) if incident else None

    async def list_incidents(
        self,
        states: list[IncidentState] | None = None,
        limit: int | None = None,
    ) -> list[IncidentRun]:
        rows = [
            i for i in self._incidents.values() if states is None or i.state in states
        ]
        rows.sort(key=lambda i: (i.created_at, i.id), reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [i.model_copy(deep=True) for i in rows]

    async def transition_incident(
        self,
        incident: IncidentRun,
        expected_revision: int,
        event: IncidentTimelineEvent,
    ) -> IncidentRun | None:
        async with self._lock:
            stored = self._incidents.get(incident.id)
            if stored is None or stored.revision != expected_revision:
                return None
            updated = incident.model_copy(update={"revision": expected_revision + 1}, deep=True)
            self._incidents[incident.id] = updated
            self._events.append(event.model_copy(deep=True))
        return updated.model_copy(deep=True)

    async def append_incident_event(self, event: IncidentTimelineEvent) -> None:
        async with self._lock:
            self._events.append(event.model_copy(deep=True))

    async def list_incident_events(
        self, incident_id: str, limit: int | None = None
    ) -> list[IncidentTimelineEvent]:
        rows = [e for e in self._events if e.incident_id == incident_id]
        if limit is not None:
            rows = rows[-limit:]
        return [e.model_copy(deep=True) for e in rows]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def append_audit(self, entry: AuditEntry) -> None:
        async with self._lock:
            self._audit.append(entry.model_copy(deep=True))

    async def list_audit(self, action: str | None = None, limit: int = 100) -> list[AuditEntry]:
        rows = [a for a in reversed(self._audit) if action is None or a.action == action]
        return [a.model_copy(deep=True) for a in rows[:limit]]
