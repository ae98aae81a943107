"""Abstract base classes for all integration providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from core.models import (
    AuditEntry,
    ExecutionResult,
    Host,
    IncidentRun,
    IncidentState,
    IncidentTimelineEvent,
    NotifyResult,
    RemediationRun,
    RunMode,
    RunState,
)


class StorageProvider(ABC):
    """Interface for the transactional store behind runs, incidents and audit.

    Every update is a compare-and-set: it succeeds only when the persisted row
    still matches the expected state/revision, and bumps ``revision``.
    """

    # ------------------------------------------------------------------
    # Hosts
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_host(self, host_id: str) -> Host | None:
        ...

    @abstractmethod
    async def list_hosts(self, enabled_only: bool = False) -> list[Host]:
        ...

    @abstractmethod
    async def save_host(self, host: Host) -> Host:
        ...

    # ------------------------------------------------------------------
    # Remediation runs
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_run(self, run: RemediationRun) -> RemediationRun:
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> RemediationRun | None:
        ...

    @abstractmethod
    async def update_run(
        self, run: RemediationRun, expected_state: RunState
    ) -> RemediationRun | None:
        """Persist *run* if the stored row has ``expected_state`` and ``run.revision``.

        Returns the stored copy with the bumped revision, or ``None`` when the
        row changed underneath the caller.
        """

    @abstractmethod
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
        """Return matching runs ordered by ``requested_at`` (oldest first by default)."""

    @abstractmethod
    async def list_ready_runs(self, now: datetime, limit: int) -> list[RemediationRun]:
        """Return the oldest queued execute-runs a drain may claim at *now*.

        Excludes dead-lettered runs, runs awaiting approval and runs whose
        ``next_attempt_at`` is still in the future.
        """

    @abstractmethod
    async def count_runs(
        self,
        host_id: str | None = None,
        action_id: str | None = None,
        mode: RunMode | None = None,
        states: list[RunState] | None = None,
        requested_since: datetime | None = None,
        auto_queued: bool | None = None,
    ) -> int:
        ...

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_incident(
        self, incident: IncidentRun, events: list[IncidentTimelineEvent]
    ) -> IncidentRun:
        """Insert the incident and its opening events in one atomic unit."""

    @abstractmethod
    async def get_incident(self, incident_id: str) -> IncidentRun | None:
        ...

    @abstractmethod
    async def list_incidents(
        self,
        states: list[IncidentState] | None = None,
        limit: int | None = None,
    ) -> list[IncidentRun]:
        """Return incidents newest first."""

    @abstractmethod
    async def transition_incident(
        self,
        incident: IncidentRun,
        expected_revision: int,
        event: IncidentTimelineEvent,
    ) -> IncidentRun | None:
        """Write *incident* and append *event* atomically if the revision matches."""

    @abstractmethod
    async def append_incident_event(self, event: IncidentTimelineEvent) -> None:
        ...

    @abstractmethod
    async def list_incident_events(
        self, incident_id: str, limit: int | None = None
    ) -> list[IncidentTimelineEvent]:
        """Return events oldest first (the most recent *limit* when bounded)."""

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    async def list_audit(self, action: str | None = None, limit: int = 100) -> list[AuditEntry]:
        """Return audit entries newest first."""


class CommandExecutor(ABC):
    """Interface for running remediation commands on a host. The only host-touching seam."""

    @abstractmethod
    async def run(
        self,
        commands: list[str],
        timeout_ms: int,
        max_buffer_bytes: int,
        host_id: str | None = None,
    ) -> ExecutionResult:
        ...


class NotificationDispatcher(ABC):
    """Interface for outbound incident and workflow notifications (email/webhook)."""

    @abstractmethod
    async def notify(self, kind: str, target: str, title: str, detail: str) -> NotifyResult:
        ...
