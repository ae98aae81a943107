"""Core data models for the Fleetguard remediation and incident engine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ActionPriority(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"


class AutoTier(str, Enum):
    OBSERVE = "observe"
    SAFE_AUTO = "safe_auto"
    GUARDED_AUTO = "guarded_auto"
    RISKY_MANUAL = "risky_manual"


class RunMode(str, Enum):
    DRY_RUN = "dry_run"
    EXECUTE = "execute"


class RunState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class ApprovalStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class IncidentState(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    CLOSED = "closed"


class PostmortemStatus(str, Enum):
    NOT_STARTED = "not_started"
    DRAFT = "draft"
    PUBLISHED = "published"
    WAIVED = "waived"


class ActionItemStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    WAIVED = "waived"


# ---------------------------------------------------------------------------
# Catalog models
# ---------------------------------------------------------------------------


class RemediationAction(BaseModel):
    """A static catalog entry describing one remediation playbook."""

    id: str
    title: str
    why: str = ""
    priority: ActionPriority = ActionPriority.P2
    risk: RiskLevel = RiskLevel.LOW
    source_codes: list[str] = Field(default_factory=list)
    commands: list[str]
    confirm_phrase: str | None = None
    rollback_commands: list[str] = Field(default_factory=list)
    rollback_notes: list[str] = Field(default_factory=list)
    canary_checks: list[str] = Field(default_factory=list)
    auto_tier: AutoTier = AutoTier.RISKY_MANUAL

    model_config = {"frozen": True}

    @property
    def effective_confirm_phrase(self) -> str:
        return self.confirm_phrase or f"EXECUTE {self.id}"


# ---------------------------------------------------------------------------
# Hosts
# ---------------------------------------------------------------------------


class Host(BaseModel):
    id: str
    name: str = ""
    enabled: bool = True
    last_seen_at: datetime | None = None
    # Free-form host metadata; carries the remediation_policy and fleet_policy blobs
    meta: dict[str, Any] = Field(default_factory=dict)


class HostFleetPolicy(BaseModel):
    """Rollout attributes derived from host metadata."""

    group: str | None = None
    tags: list[str] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=list)
    rollout_paused: bool = False
    rollout_priority: int = 0


# ---------------------------------------------------------------------------
# Remediation runs
# ---------------------------------------------------------------------------


class ApprovalRecord(BaseModel):
    version: int = 1
    required: bool = False
    status: ApprovalStatus = ApprovalStatus.NONE
    reason: str | None = None
    requested_at: datetime | None = None
    requested_by_user_id: str | None = None
    approved_at: datetime | None = None
    approved_by_user_id: str | None = None


class CanaryRecord(BaseModel):
    version: int = 1
    enabled: bool = False
    rollout_percent: int = Field(default=100, ge=0, le=100)
    bucket: int | None = Field(default=None, ge=0, le=99)
    selected: bool = False
    checks: list[str] = Field(default_factory=list, max_length=20)
    last_checked_at: datetime | None = None
    passed: bool | None = None
    error: str | None = None


class RollbackRecord(BaseModel):
    version: int = 1
    enabled: bool = False
    attempted: bool = False
    succeeded: bool | None = None
    commands: list[str] = Field(default_factory=list, max_length=20)
    last_run_at: datetime | None = None
    error: str | None = None


class RemediationRun(BaseModel):
    """A persisted remediation job and its retry/approval/canary bookkeeping."""

    id: str
    host_id: str
    action_id: str
    mode: RunMode = RunMode.EXECUTE
    state: RunState = RunState.QUEUED
    requested_at: datetime
    requested_by_user_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    # Snapshot of the catalog commands at admission time
    commands: list[str] = Field(default_factory=list)
    attempts: int = 0
    max_attempts: int = Field(default=3, ge=1, le=20)
    next_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    output: str | None = None
    dlq: bool = False
    dlq_reason: str | None = None
    replay_of_run_id: str | None = None
    approval: ApprovalRecord = Field(default_factory=ApprovalRecord)
    canary: CanaryRecord = Field(default_factory=CanaryRecord)
    rollback: RollbackRecord = Field(default_factory=RollbackRecord)
    auto_queued: bool = False
    auto_reason: str | None = None
    auto_tier: AutoTier | None = None
    # Optimistic concurrency token, bumped by the store on every update
    revision: int = 0


class CommandStepResult(BaseModel):
    command: str
    ok: bool
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: int = 0


class ExecutionResult(BaseModel):
    """Outcome of running an ordered command list on a host."""

    ok: bool
    output: str = ""
    error: str | None = None
    steps: list[CommandStepResult] = Field(default_factory=list)


class NotifyResult(BaseModel):
    ok: bool
    error: str | None = None


class DrainItem(BaseModel):
    run_id: str
    host_id: str
    action_id: str
    state: RunState
    error: str | None = None


class DrainSummary(BaseModel):
    ok: bool
    requested_limit: int
    processed: int
    expired: int = 0
    items: list[DrainItem] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ReplaySummary(BaseModel):
    ok: bool
    requested_limit: int
    replayed: int
    runs: list[RemediationRun] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Incidents
# ---------------------------------------------------------------------------


class ActionItem(BaseModel):
    id: str
    title: str = Field(max_length=220)
    owner: str | None = None
    due_ts: datetime | None = None
    status: ActionItemStatus = ActionItemStatus.OPEN
    note: str | None = None


class PostmortemRecord(BaseModel):
    status: PostmortemStatus = PostmortemStatus.NOT_STARTED
    summary: str | None = None
    impact: str | None = None
    root_cause: str | None = None
    action_items: list[ActionItem] = Field(default_factory=list, max_length=60)
    published_at: datetime | None = None


class IncidentRun(BaseModel):
    """An operator-facing incident created from a workflow."""

    id: str
    workflow_id: str
    workflow_title: str
    title: str
    summary: str = ""
    severity: Severity = Severity.MEDIUM
    state: IncidentState = IncidentState.OPEN
    trigger_signal: str | None = None
    host_id: str | None = None
    created_by_user_id: str | None = None
    assignee_user_id: str | None = None
    assignee_email: str | None = None
    acknowledged_at: datetime | None = None
    acknowledged_by_user_id: str | None = None
    ack_due_at: datetime | None = None
    escalated_at: datetime | None = None
    escalation_count: int = 0
    next_escalation_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by_user_id: str | None = None
    closed_at: datetime | None = None
    closed_by_user_id: str | None = None
    created_at: datetime
    updated_at: datetime
    postmortem: PostmortemRecord = Field(default_factory=PostmortemRecord)
    revision: int = 0


class IncidentTimelineEvent(BaseModel):
    """Append-only audit trail entry for an incident."""

    id: str
    incident_id: str
    type: str
    step_id: str | None = None
    message: str
    event_ts: datetime
    actor_user_id: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class IncidentDetail(BaseModel):
    incident: IncidentRun
    timeline: list[IncidentTimelineEvent] = Field(default_factory=list)


class IncidentCounts(BaseModel):
    total: int = 0
    open: int = 0
    acknowledged: int = 0
    resolved: int = 0
    closed: int = 0
    ack_overdue: int = 0
    escalation_due: int = 0


class IncidentList(BaseModel):
    incidents: list[IncidentRun] = Field(default_factory=list)
    counts: IncidentCounts = Field(default_factory=IncidentCounts)


class SweepResult(BaseModel):
    ok: bool = True
    evaluated: int = 0
    escalated: int = 0
    incident_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)
    next_due_at: datetime | None = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntry(BaseModel):
    id: str
    ts: datetime
    action: str
    detail: str = ""
    user_id: str | None = None
    host_id: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
