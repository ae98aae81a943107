"""Incident lifecycle engine: timers, legal transitions, timeline and postmortems."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from core.exceptions import IncidentEngineError
from core.metrics import MetricsRegistry
from core.models import (
    ActionItem,
    ActionItemStatus,
    IncidentCounts,
    IncidentDetail,
    IncidentList,
    IncidentRun,
    IncidentState,
    IncidentTimelineEvent,
    PostmortemStatus,
    Severity,
)
from core.workflows import StepExecution, StepKind, WorkflowCatalog, WorkflowStepExecutor
from integrations.base import StorageProvider

logger = logging.getLogger(__name__)

MIN_TIMER_MINUTES = 1
MAX_TIMER_MINUTES = 1440
MAX_NOTE_CHARS = 4000
MAX_TEXT_CHARS = 8000
MAX_ACTION_ITEMS = 60
MAX_ACTION_ITEM_TITLE = 220
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500
DEFAULT_TIMELINE_LIMIT = 200


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uid() -> str:
    return uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IncidentTimerPolicy:
    ack_minutes: int
    escalation_minutes: int

    @classmethod
    def clamped(cls, ack_minutes: int, escalation_minutes: int) -> IncidentTimerPolicy:
        return cls(
            ack_minutes=max(MIN_TIMER_MINUTES, min(MAX_TIMER_MINUTES, ack_minutes)),
            escalation_minutes=max(MIN_TIMER_MINUTES, min(MAX_TIMER_MINUTES, escalation_minutes)),
        )


DEFAULT_TIMER_POLICIES: dict[Severity, IncidentTimerPolicy] = {
    Severity.CRITICAL: IncidentTimerPolicy(ack_minutes=5, escalation_minutes=10),
    Severity.HIGH: IncidentTimerPolicy(ack_minutes=15, escalation_minutes=20),
    Severity.MEDIUM: IncidentTimerPolicy(ack_minutes=30, escalation_minutes=45),
}


def compute_timers(
    severity: Severity,
    now: datetime,
    timers: dict[Severity, IncidentTimerPolicy] | None = None,
) -> tuple[datetime, datetime]:
    """Return ``(ack_due_at, next_escalation_at)`` for an incident (re)opened at *now*."""
    policy = (timers or DEFAULT_TIMER_POLICIES)[severity]
    ack_due_at = now + timedelta(minutes=policy.ack_minutes)
    return ack_due_at, ack_due_at + timedelta(minutes=policy.escalation_minutes)


def escalation_due_at(incident: IncidentRun) -> datetime | None:
    """The deadline at which an open incident next escalates, or None."""
    if incident.state != IncidentState.OPEN:
        return None
    return incident.next_escalation_at or incident.ack_due_at


# ---------------------------------------------------------------------------
# Legal actions
# ---------------------------------------------------------------------------

INCIDENT_ACTIONS = (
    "assign",
    "note",
    "postmortem",
    "acknowledge",
    "resolve",
    "close",
    "reopen",
    "step",
)

_NOT_CLOSED = frozenset(
    {IncidentState.OPEN, IncidentState.ACKNOWLEDGED, IncidentState.RESOLVED}
)

_LEGAL_STATES: dict[str, frozenset[IncidentState]] = {
    "assign": _NOT_CLOSED,
    "note": _NOT_CLOSED,
    "postmortem": _NOT_CLOSED,
    "step": _NOT_CLOSED,
    "acknowledge": frozenset({IncidentState.OPEN, IncidentState.ACKNOWLEDGED}),
    "resolve": frozenset(
        {IncidentState.OPEN, IncidentState.ACKNOWLEDGED, IncidentState.RESOLVED}
    ),
    "close": frozenset({IncidentState.RESOLVED, IncidentState.CLOSED}),
    "reopen": frozenset(
        {IncidentState.ACKNOWLEDGED, IncidentState.RESOLVED, IncidentState.CLOSED}
    ),
}


def can_run_incident_action(state: IncidentState, action: str) -> bool:
    allowed = _LEGAL_STATES.get(action)
    return allowed is not None and state in allowed


# ---------------------------------------------------------------------------
# Postmortem helpers
# ---------------------------------------------------------------------------


def _text(value: Any, limit: int = MAX_TEXT_CHARS) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text[:limit] or None


def _parse_item(raw: Any) -> ActionItem | None:
    if isinstance(raw, str):
        raw = {"title": raw}
    if not isinstance(raw, dict):
        return None
    title = _text(raw.get("title"), MAX_ACTION_ITEM_TITLE)
    if not title:
        return None
    try:
        status = ActionItemStatus(str(raw.get("status") or "open").strip().lower())
    except ValueError:
        status = ActionItemStatus.OPEN
    return ActionItem(
        id=_text(raw.get("id"), 64) or f"ai_{_uid()}",
        title=title,
        owner=_text(raw.get("owner"), 200),
        due_ts=raw.get("due_ts"),
        status=status,
        note=_text(raw.get("note"), 1000),
    )


def parse_action_items(raw: Any) -> list[ActionItem]:
    """Parse postmortem action items from a list of mappings/strings or a multi-line string.

    Blank entries are dropped and the list is capped at 60 items.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [line for line in raw.splitlines() if line.strip()]
    items: list[ActionItem] = []
    for entry in raw:
        item = _parse_item(entry)
        if item is not None:
            items.append(item)
        if len(items) >= MAX_ACTION_ITEMS:
            break
    return items


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class StepOutcome(BaseModel):
    incident: IncidentRun
    execution: StepExecution


# (updated incident, event type, message, event meta, step id)
_Mutation = tuple[IncidentRun, str, str, dict[str, Any], Optional[str]]


class IncidentEngine:
    """Drives incidents through ``open -> acknowledged -> resolved -> closed``.

    Every mutation reads the current incident, checks the legal-action table,
    and writes the new row together with exactly one timeline event as a
    compare-and-set on ``revision``. A lost race surfaces as a 409.
    """

    def __init__(
        self,
        storage: StorageProvider,
        workflows: WorkflowCatalog,
        step_executor: WorkflowStepExecutor,
        metrics: MetricsRegistry,
        timers: dict[Severity, IncidentTimerPolicy] | None = None,
    ) -> None:
        self._storage = storage
        self._workflows = workflows
        self._step_executor = step_executor
        self._metrics = metrics
        self._timers = timers or DEFAULT_TIMER_POLICIES

    @property
    def timers(self) -> dict[Severity, IncidentTimerPolicy]:
        return self._timers

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _require(value: str | None, name: str) -> str:
        text = (value or "").strip()
        if not text:
            raise IncidentEngineError(400, f"{name} is required")
        return text

    @staticmethod
    def _event(
        incident_id: str,
        event_type: str,
        message: str,
        now: datetime,
        actor_user_id: str | None,
        meta: dict[str, Any] | None = None,
        step_id: str | None = None,
    ) -> IncidentTimelineEvent:
        return IncidentTimelineEvent(
            id=f"evt-{_uid()}",
            incident_id=incident_id,
            type=event_type,
            step_id=step_id,
            message=message,
            event_ts=now,
            actor_user_id=actor_user_id,
            meta=meta or {},
        )

    async def _load(self, incident_id: str | None) -> IncidentRun:
        incident_id = self._require(incident_id, "incident_id")
        incident = await self._storage.get_incident(incident_id)
        if incident is None:
            raise IncidentEngineError(404, f"Incident '{incident_id}' not found")
        return incident

    async def _transition(
        self,
        incident_id: str | None,
        action: str,
        actor_user_id: str | None,
        mutate: Callable[[IncidentRun, datetime], _Mutation],
        now: datetime | None = None,
    ) -> IncidentRun:
        actor = self._require(actor_user_id, "actor_user_id")
        current = await self._load(incident_id)
        if not can_run_incident_action(current.state, action):
            raise IncidentEngineError(
                409, f"Cannot {action} incident '{current.id}' in state {current.state.value}"
            )
        now = now or _now()
        updated, event_type, message, meta, step_id = mutate(current, now)
        updated = updated.model_copy(update={"updated_at": now})
        event = self._event(current.id, event_type, message, now, actor, meta, step_id)

        stored = await self._storage.transition_incident(updated, current.revision, event)
        if stored is None:
            raise IncidentEngineError(409, f"Incident '{current.id}' was modified concurrently")

        self._metrics.incident_transitions_total.labels(action=action).inc()
        logger.info(
            "Incident %s %s by %s (%s -> %s)",
            stored.id,
            action,
            actor,
            current.state.value,
            stored.state.value,
        )
        return stored

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_incidents(
        self,
        state: str | None = None,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> IncidentList:
        """List incidents newest first, optionally filtered by state or ``active``."""
        now = now or _now()
        if state in (None, "", "all"):
            states = None
        elif state == "active":
            states = [IncidentState.OPEN, IncidentState.ACKNOWLEDGED]
        else:
            try:
                states = [IncidentState(state)]
            except ValueError as exc:
                raise IncidentEngineError(400, f"Invalid state filter '{state}'") from exc

        bounded = max(1, min(MAX_LIST_LIMIT, limit or DEFAULT_LIST_LIMIT))
        everything = await self._storage.list_incidents()
        counts = IncidentCounts(total=len(everything))
        for incident in everything:
            setattr(counts, incident.state.value, getattr(counts, incident.state.value) + 1)
            if incident.state == IncidentState.OPEN:
                if incident.ack_due_at and incident.ack_due_at <= now:
                    counts.ack_overdue += 1
                due = escalation_due_at(incident)
                if due and due <= now:
                    counts.escalation_due += 1

        selected = [i for i in everything if states is None or i.state in states][:bounded]
        return IncidentList(incidents=selected, counts=counts)

    async def detail(
        self, incident_id: str | None, timeline_limit: int = DEFAULT_TIMELINE_LIMIT
    ) -> IncidentDetail:
        incident = await self._load(incident_id)
        timeline = await self._storage.list_incident_events(incident.id, limit=timeline_limit)
        return IncidentDetail(incident=incident, timeline=timeline)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        workflow_id: str | None,
        actor_user_id: str | None,
        title: str | None = None,
        summary: str | None = None,
        severity: Severity | str | None = None,
        trigger_signal: str | None = None,
        host_id: str | None = None,
        assignee_user_id: str | None = None,
        assignee_email: str | None = None,
        note: str | None = None,
        now: datetime | None = None,
    ) -> IncidentDetail:
        actor = self._require(actor_user_id, "actor_user_id")
        workflow_key = self._require(workflow_id, "workflow_id")
        workflow = self._workflows.get(workflow_key)
        if workflow is None:
            raise IncidentEngineError(404, f"Workflow '{workflow_key}' not found")
        try:
            level = Severity(severity) if severity else workflow.severity
        except ValueError as exc:
            raise IncidentEngineError(400, f"Invalid severity '{severity}'") from exc

        now = now or _now()
        ack_due_at, next_escalation_at = compute_timers(level, now, self._timers)
        incident = IncidentRun(
            id=f"inc-{_uid()}",
            workflow_id=workflow.id,
            workflow_title=workflow.title,
            title=_text(title, 200) or workflow.title,
            summary=_text(summary) or workflow.summary,
            severity=level,
            trigger_signal=_text(trigger_signal, 120),
            host_id=_text(host_id, 120),
            created_by_user_id=actor,
            assignee_user_id=_text(assignee_user_id, 120),
            assignee_email=_text(assignee_email, 320),
            ack_due_at=ack_due_at,
            next_escalation_at=next_escalation_at,
            created_at=now,
            updated_at=now,
        )

        events = [
            self._event(
                incident.id,
                "incident.created",
                f"Incident opened from workflow '{workflow.id}' ({level.value})",
                now,
                actor,
                {"severity": level.value, "trigger_signal": incident.trigger_signal},
            )
        ]
        if incident.assignee_user_id or incident.assignee_email:
            events.append(
                self._event(
                    incident.id,
                    "incident.assigned",
                    f"Assigned to {incident.assignee_user_id or incident.assignee_email}",
                    now,
                    actor,
                    {
                        "assignee_user_id": incident.assignee_user_id,
                        "assignee_email": incident.assignee_email,
                    },
                )
            )
        note_text = _text(note, MAX_NOTE_CHARS)
        if note_text:
            events.append(self._event(incident.id, "incident.note", note_text, now, actor))

        stored = await self._storage.create_incident(incident, events)
        self._metrics.incident_transitions_total.labels(action="create").inc()
        logger.info(
            "Incident %s created from workflow %s severity=%s", stored.id, workflow.id, level.value
        )
        return IncidentDetail(incident=stored, timeline=events)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def assign(
        self,
        incident_id: str | None,
        actor_user_id: str | None,
        assignee_user_id: str | None = None,
        assignee_email: str | None = None,
        now: datetime | None = None,
    ) -> IncidentRun:
        user = _text(assignee_user_id, 120)
        email = _text(assignee_email, 320)
        if not user and not email:
            raise IncidentEngineError(400, "assignee_user_id or assignee_email is required")

        def mutate(incident: IncidentRun, ts: datetime) -> _Mutation:
            updated = incident.model_copy(
                update={"assignee_user_id": user, "assignee_email": email}
            )
            meta = {"assignee_user_id": user, "assignee_email": email}
            return updated, "incident.assigned", f"Assigned to {user or email}", meta, None

        return await self._transition(incident_id, "assign", actor_user_id, mutate, now)

    async def acknowledge(
        self, incident_id: str | None, actor_user_id: str | None, now: datetime | None = None
    ) -> IncidentRun:
        def mutate(incident: IncidentRun, ts: datetime) -> _Mutation:
            updated = incident.model_copy(
                update={
                    "state": IncidentState.ACKNOWLEDGED,
                    "acknowledged_at": incident.acknowledged_at or ts,
                    "acknowledged_by_user_id": incident.acknowledged_by_user_id
                    or actor_user_id,
                    "next_escalation_at": None,
                }
            )
            return updated, "incident.acknowledged", "Incident acknowledged", {}, None

        return await self._transition(incident_id, "acknowledge", actor_user_id, mutate, now)

    async def resolve(
        self,
        incident_id: str | None,
        actor_user_id: str | None,
        note: str | None = None,
        now: datetime | None = None,
    ) -> IncidentRun:
        def mutate(incident: IncidentRun, ts: datetime) -> _Mutation:
            postmortem = incident.postmortem
            if postmortem.status == PostmortemStatus.NOT_STARTED:
                postmortem = postmortem.model_copy(update={"status": PostmortemStatus.DRAFT})
            updated = incident.model_copy(
                update={
                    "state": IncidentState.RESOLVED,
                    "resolved_at": ts,
                    "resolved_by_user_id": actor_user_id,
                    "next_escalation_at": None,
                    "postmortem": postmortem,
                }
            )
            message = _text(note, MAX_NOTE_CHARS) or "Incident resolved"
            return updated, "incident.resolved", message, {}, None

        return await self._transition(incident_id, "resolve", actor_user_id, mutate, now)

    async def close(
        self, incident_id: str | None, actor_user_id: str | None, now: datetime | None = None
    ) -> IncidentRun:
        def mutate(incident: IncidentRun, ts: datetime) -> _Mutation:
            updated = incident.model_copy(
                update={
                    "state": IncidentState.CLOSED,
                    "closed_at": ts,
                    "closed_by_user_id": actor_user_id,
                    "next_escalation_at": None,
                }
            )
            return updated, "incident.closed", "Incident closed", {}, None

        return await self._transition(incident_id, "close", actor_user_id, mutate, now)

    async def reopen(
        self,
        incident_id: str | None,
        actor_user_id: str | None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> IncidentRun:
        def mutate(incident: IncidentRun, ts: datetime) -> _Mutation:
            ack_due_at, next_escalation_at = compute_timers(incident.severity, ts, self._timers)
            updated = incident.model_copy(
                update={
                    "state": IncidentState.OPEN,
                    "ack_due_at": ack_due_at,
                    "next_escalation_at": next_escalation_at,
                    "acknowledged_at": None,
                    "acknowledged_by_user_id": None,
                    "resolved_at": None,
                    "resolved_by_user_id": None,
                    "closed_at": None,
                    "closed_by_user_id": None,
                }
            )
            message = _text(reason, MAX_NOTE_CHARS) or "Incident reopened"
            meta = {"previous_state": incident.state.value}
            return updated, "incident.reopened", message, meta, None

        return await self._transition(incident_id, "reopen", actor_user_id, mutate, now)

    async def add_note(
        self,
        incident_id: str | None,
        actor_user_id: str | None,
        message: str | None,
        now: datetime | None = None,
    ) -> IncidentRun:
        text = _text(message, MAX_NOTE_CHARS)
        if not text:
            raise IncidentEngineError(400, "message is required")

        def mutate(incident: IncidentRun, ts: datetime) -> _Mutation:
            return incident, "incident.note", text, {}, None

        return await self._transition(incident_id, "note", actor_user_id, mutate, now)

    async def update_postmortem(
        self,
        incident_id: str | None,
        actor_user_id: str | None,
        status: PostmortemStatus | str | None = None,
        summary: str | None = None,
        impact: str | None = None,
        root_cause: str | None = None,
        action_items: Any = None,
        now: datetime | None = None,
    ) -> IncidentRun:
        """Patch the postmortem; fields left as None keep their current value."""
        try:
            new_status = PostmortemStatus(status) if status else None
        except ValueError as exc:
            raise IncidentEngineError(400, f"Invalid postmortem status '{status}'") from exc
        try:
            items = parse_action_items(action_items) if action_items is not None else None
        except (TypeError, ValidationError) as exc:
            raise IncidentEngineError(400, f"Invalid action items: {exc}") from exc

        def mutate(incident: IncidentRun, ts: datetime) -> _Mutation:
            current = incident.postmortem
            changes: dict[str, Any] = {}
            if new_status is not None:
                changes["status"] = new_status
                if new_status == PostmortemStatus.PUBLISHED and current.published_at is None:
                    changes["published_at"] = ts
            for name, value in (("summary", summary), ("impact", impact), ("root_cause", root_cause)):
                if value is not None:
                    changes[name] = _text(value)
            if items is not None:
                changes["action_items"] = items
            postmortem = current.model_copy(update=changes)
            updated = incident.model_copy(update={"postmortem": postmortem})
            meta = {
                "status": postmortem.status.value,
                "fields": sorted(changes),
                "action_items": len(postmortem.action_items),
            }
            return updated, "incident.postmortem.updated", "Postmortem updated", meta, None

        return await self._transition(incident_id, "postmortem", actor_user_id, mutate, now)

    async def execute_step(
        self,
        incident_id: str | None,
        step_id: str | None,
        actor_user_id: str | None,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> StepOutcome:
        """Run an API step of the incident's workflow and record the outcome on its timeline."""
        self._require(actor_user_id, "actor_user_id")
        step_key = self._require(step_id, "step_id")
        incident = await self._load(incident_id)
        if not can_run_incident_action(incident.state, "step"):
            raise IncidentEngineError(
                409, f"Cannot run steps on incident '{incident.id}' in state {incident.state.value}"
            )
        workflow = self._workflows.get(incident.workflow_id)
        if workflow is None:
            raise IncidentEngineError(404, f"Workflow '{incident.workflow_id}' not found")
        step = workflow.get_step(step_key)
        if step is None:
            raise IncidentEngineError(404, f"Step '{step_key}' not found in '{workflow.id}'")
        if step.kind == StepKind.MANUAL:
            raise IncidentEngineError(400, f"Step '{step.id}' is manual and cannot be executed")

        execution = await self._step_executor.execute(workflow, step, payload, actor_user_id)

        def mutate(current: IncidentRun, ts: datetime) -> _Mutation:
            if execution.ok:
                event_type, message = "incident.step.executed", f"Step '{step.title}' executed"
            else:
                event_type = "incident.step.failed"
                message = f"Step '{step.title}' failed: {execution.error}"
            meta = {"action": step.action.value if step.action else None, "ok": execution.ok}
            return current, event_type, message, meta, step.id

        stored = await self._transition(incident.id, "step", actor_user_id, mutate, now)
        return StepOutcome(incident=stored, execution=execution)
